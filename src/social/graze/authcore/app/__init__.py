"""aiohttp application hosting the auth core: configuration, service wiring, background sweeps and health checks."""
