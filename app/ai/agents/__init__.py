"""Agent implementations: discovery, script generation and quality review."""
