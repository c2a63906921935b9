"""
authcore - Credential and Session Security Core

This package implements the security core underneath a web application's sign-in surface. It decides whether an
authentication attempt is permitted, maintains the lifecycle of sessions and single-use tokens, and enforces password
hygiene policy while resisting brute-force, credential-stuffing and session-hijacking attempts.

Key Components:
- core: The security subsystems (rate limiter, session manager, token service, password policy) and the
  orchestrator that sequences them for sign-in, sign-up, password change, email verification and password reset
- store: Narrow persistence interfaces for each subsystem, with PostgreSQL and in-memory adapters
- model: SQLAlchemy models for principals, attempts, sessions and tokens
- app: Process bootstrapping, configuration, metrics and background sweeps

Request Flow:
1. Every authentication-adjacent request first clears the rate limiter
2. The domain action runs (verify credential, create principal, consume token)
3. The outcome is recorded back into the rate limiter and the audit log
4. On success, the session manager mints or refreshes a session

The HTTP surface that maps requests onto these operations lives outside this package; the core only needs the
service container built by `social.graze.authcore.app.services.build_auth_services`.
"""
