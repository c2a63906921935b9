"""
Persistence Interfaces

Each core subsystem reaches its backing table through its own narrow interface defined in `base.py`; no subsystem
reads or writes another subsystem's rows. Two adapters implement every interface:

- sql.py: PostgreSQL through SQLAlchemy's async ORM, one transaction per call, bounded by a query timeout
- memory.py: dict-backed adapters used for tests and local development

`factory.build_stores` picks one set of adapters at start-up from the `STORE_BACKEND` setting.
"""
