"""
Exception taxonomy shared by the embedder, codec and batch pipeline.

    EmbedPipeError
    ├── InitError            model could not be brought up
    │   ├── ModelUnavailable
    │   └── HardwareUnsupported
    ├── EmbedError           a single embedding / similarity call failed
    │   ├── NotInitialized
    │   ├── EmptyInput
    │   ├── InvalidText
    │   ├── ModelFailure
    │   └── DimensionMismatch
    ├── CodecError           persisted bytes could not be turned into a collection
    │   ├── MalformedInput
    │   └── CollectionDimensionMismatch
    └── BatchCancelled

File system problems are not wrapped: OSError propagates as-is.
"""


class EmbedPipeError(Exception):
    pass


# --- initialize() ---

class InitError(EmbedPipeError):
    pass


class ModelUnavailable(InitError):
    pass


class HardwareUnsupported(InitError):
    pass


# --- embedding ---

class EmbedError(EmbedPipeError):
    pass


class NotInitialized(EmbedError):
    pass


class EmptyInput(EmbedError):
    pass


class InvalidText(EmbedError):
    """Text that is not valid Unicode (e.g. undecodable bytes from an input file)."""


class ModelFailure(EmbedError):
    pass


class DimensionMismatch(EmbedError):
    def __init__(self, expected: int, actual: int):
        super().__init__(f"Vector dimensions differ: {expected} != {actual}")
        self.expected = expected
        self.actual = actual


# --- codec ---

class CodecError(EmbedPipeError):
    pass


class MalformedInput(CodecError):
    pass


class CollectionDimensionMismatch(CodecError):
    def __init__(self, expected: int, actual: int, index: int | None = None):
        where = f" (record {index})" if index is not None else ''
        super().__init__(f"Record has {actual} values, collection dimension is {expected}{where}")
        self.expected = expected
        self.actual = actual
        self.index = index


# --- batch ---

class BatchCancelled(EmbedPipeError):
    def __init__(self, completed: int):
        super().__init__(f"Batch cancelled after {completed} records")
        self.completed = completed
