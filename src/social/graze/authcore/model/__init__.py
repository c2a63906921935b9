"""
Database Models

This package defines the database models for authcore using SQLAlchemy ORM. These models are the persistent state
behind the store adapters in `social.graze.authcore.store.sql`; the core subsystems never touch them directly.

Key Models:
- base.py: Base SQLAlchemy model with common type definitions
- principal.py: Principals (identity + current password credential) and their password history
- attempts.py: Append-only log of authentication-adjacent attempts read by the rate limiter
- sessions.py: Server-tracked sessions and their activity trail
- verification.py: Single-use email verification and password reset tokens
- health.py: Health monitoring gauge

Sessions, attempts and activity events are never updated in place beyond their lifecycle flags; they form the
audit trail for the service and are only removed by retention sweeps.
"""
