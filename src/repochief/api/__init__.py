"""Authenticated access to the RepoChief API."""
