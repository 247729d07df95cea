"""Local identity and credential storage for repochief."""
