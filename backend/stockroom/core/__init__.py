"""Core configuration, security and access control."""
