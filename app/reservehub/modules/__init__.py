"""
Feature modules live under this package.

Each module owns its models, service logic and routes, while reusing the shared
primitives (sessions, RBAC, audit, DB session).
"""
