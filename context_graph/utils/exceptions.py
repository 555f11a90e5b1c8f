"""
Domain errors raised by the knowledge graph services.
"""


class ContextGraphError(Exception):
    """Base exception for the knowledge graph core."""
    pass


class ValidationError(ContextGraphError):
    """Bad input at a service boundary: unknown item type, stance, status or argument length."""
    pass


class NotFoundError(ContextGraphError):
    """An explicit id lookup matched nothing."""
    pass


class CollaboratorUnavailable(ContextGraphError):
    """The knowledge store, graph store or embedding service failed or timed out."""
    pass


class ConcurrencyConflict(ContextGraphError):
    """A unique-key insert lost a race. Resolved internally by refetching the winner."""
    pass
