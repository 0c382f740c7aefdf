"""Exceptions raised while building or folding legacy weights."""


class LegacyWeightsError(ValueError):
    pass


class FormatError(LegacyWeightsError):
    """The serialized weights are malformed or their sizes are inconsistent."""


class PreconditionError(LegacyWeightsError):
    """A fold was requested with arguments the block cannot satisfy."""


class AlreadyFoldedError(PreconditionError):
    """`fold_bn` was called on a block that has already been folded."""
