"""
Scope-hierarchical role-based access control.

Implements wildcard permission matching, a frozen scope/role registry,
durable role assignments with delegation rules, and the authorization
service that ties them together.
"""
