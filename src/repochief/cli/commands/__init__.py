"""CLI command groups for repochief."""
