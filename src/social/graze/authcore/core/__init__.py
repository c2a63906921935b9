"""
Security Core

The subsystems, leaves first:

- rate_limiter.py: Fixed-window, sliding-window and token-bucket limiting over the attempt log, with adaptive scaling
- tokens.py: Single-use, typed, expiring tokens for email verification and password reset
- password_policy.py: Complexity validation, reuse history and expiration
- session_manager.py: Session lifecycle, concurrency limits and anomaly detection
- orchestrator.py: Sign-in, sign-up, password change, email verification and password reset flows

Supporting modules: errors.py (error taxonomy and user-facing messages), audit.py (audit and security event log),
hashing.py (slow salted password hashing), cache.py (bounded LRU cache), mailer.py (outbound email collaborator)
and clock.py.

Every subsystem receives its store, clock and collaborators through its constructor; nothing here holds module
level state.
"""
