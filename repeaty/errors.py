from typing import Callable


class RepeatyError(Exception):
    """Base class for every failure the tiling pipeline reports."""

    kind = "RepeatyError"


class MalformedStream(RepeatyError):
    kind = "MalformedStream"


class MissingHeader(RepeatyError):
    kind = "MissingHeader"


class UnsupportedFormat(RepeatyError):
    kind = "UnsupportedFormat"


class DecompressionError(RepeatyError):
    kind = "DecompressionError"


class EncodingError(RepeatyError):
    kind = "EncodingError"


class Cancelled(RepeatyError):
    kind = "Cancelled"


CancelCheck = Callable[[], bool] | None


def raise_if_cancelled(cancel: CancelCheck, stage: str):
    if cancel is not None and cancel():
        raise Cancelled(f"Cancelled during {stage}")
