"""Shared utilities (files, logging) for repochief."""
