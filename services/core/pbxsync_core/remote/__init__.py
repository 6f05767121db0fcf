"""Access to tenant PBX databases: SSH tunnels and read-only extraction."""
