"""
Exception classes for anchor-based integration.

Every error raised by a pipeline stage derives from IntegrationError, so callers
can catch one type and read ``stage`` to see where the run stopped.
"""


class IntegrationError(Exception):
    """Base exception for all integration errors."""

    def __init__(self, message, stage=None):
        super().__init__(message)
        self.stage = stage

    def __str__(self):
        message = super().__str__()
        if self.stage is not None:
            return f"[{self.stage}] {message}"
        return message


class ConfigurationError(IntegrationError):
    """Invalid integration parameter."""

    pass


class DataError(IntegrationError):
    """Input data is missing, malformed or incompatible."""

    pass


class MissingGeneError(DataError):
    """A requested gene is absent from a dataset."""

    def __init__(self, dataset, genes, stage=None):
        self.dataset = dataset
        self.genes = list(genes)
        preview = ", ".join(map(str, self.genes[:10]))
        if len(self.genes) > 10:
            preview += f", ... ({len(self.genes)} total)"
        super().__init__(f"Genes missing from dataset '{dataset}': {preview}", stage=stage)


class InsufficientFeaturesError(DataError):
    """Fewer shared genes than the configured minimum."""

    def __init__(self, n_found, n_required, stage=None):
        self.n_found = n_found
        self.n_required = n_required
        super().__init__(
            f"Only {n_found} shared features available, at least {n_required} required",
            stage=stage,
        )


class RankDeficiencyError(IntegrationError):
    """CCA could not be stabilized by ridge regularization."""

    pass


class NoAnchorsError(IntegrationError):
    """No anchors survived filtering, so there is nothing to correct with."""

    pass


class IntegrationCancelledError(IntegrationError):
    """The caller cancelled the run between stages."""

    pass
