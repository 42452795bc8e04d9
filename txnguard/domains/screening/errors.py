"""Screening domain exceptions."""


class InvalidTransactionError(ValueError):
    """The transaction is structurally invalid and cannot be screened."""

    def __init__(self, transaction_id: str, problems: list[str]) -> None:
        self.transaction_id = transaction_id
        self.problems = problems
        super().__init__(f"Invalid transaction {transaction_id!r}: {'; '.join(problems)}")


class SanctionsProviderError(RuntimeError):
    """A sanctions list provider could not answer."""

    def __init__(self, provider: str, reason: str) -> None:
        self.provider = provider
        self.reason = reason
        super().__init__(f"Sanctions provider {provider} unavailable: {reason}")


class ReviewStateError(ValueError):
    """A review item cannot move to the requested state."""
