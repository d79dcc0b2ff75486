from __future__ import annotations


class DiscoveryError(Exception):
    """Base discovery error."""


class ValidationError(DiscoveryError):
    """Raised when client input (filters, viewport, category) cannot be interpreted."""


class StoreUnavailableError(DiscoveryError):
    """Raised when the entity store is not configured or cannot be reached."""


class ApplicationError(DiscoveryError):
    """Raised when the store or index fails while executing a query."""

    def __init__(self, message: str, *, category: str | None = None, query: str | None = None) -> None:
        super().__init__(message)
        self.category = category
        self.query = query

    def __str__(self) -> str:
        base = super().__str__()
        context = []
        if self.category:
            context.append(f"category={self.category}")
        if self.query:
            context.append(f"query={self.query!r}")
        if not context:
            return base
        return f"{base} ({' '.join(context)})"
