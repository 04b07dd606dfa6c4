"""
Permission management feature module.

Implements Role-Based Access Control (RBAC) for institution- and polo-scoped
role assignments, with resource/action synonym matching and a decision cache.
"""
