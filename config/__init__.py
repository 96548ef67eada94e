"""Configuration loading for the multi-site access-control layer."""
