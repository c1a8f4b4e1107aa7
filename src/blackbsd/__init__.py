"""BlackBSD image builder for Hetzner Cloud."""
