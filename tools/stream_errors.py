#!/usr/bin/env python3
"""
stream_errors.py - Error taxonomy for stream queries

Every error is a ValueError so callers that already catch ValueError
around document loading keep working.

    StreamQueryError
      QuerySyntaxError          malformed literal / identifier / mapping
      PlanError                 build-time, fatal to the whole document
        DuplicateIdentifierError
        InvalidReferenceError
        HintRangeError
        SignatureError
      DecodeError               match-time, discards one candidate only
        UnexpectedEofError
        InvalidUtf8Error
        SizeOverflowError
        UnresolvedReferenceError
        CursorRangeError
        ConstraintError         value outside a field's expect list
"""

from typing import Optional


class StreamQueryError(ValueError):
    """Base class for all stream query errors."""


class QuerySyntaxError(StreamQueryError):
    """A query document value could not be parsed."""


class PlanError(StreamQueryError):
    """The document cannot be turned into a scan plan."""


class DuplicateIdentifierError(PlanError):
    pass


class InvalidReferenceError(PlanError):
    pass


class HintRangeError(PlanError):
    pass


class SignatureError(PlanError):
    pass


class DecodeError(StreamQueryError):
    """
    A field could not be decoded at the current cursor.

    Raised inside a candidate match; the matcher discards the candidate
    and keeps scanning.
    """

    def __init__(self, message: str, field: Optional[str] = None,
                 position: Optional[int] = None):
        self.field = field
        self.position = position
        if field is not None:
            message = f"{field}: {message}"
        super().__init__(message)


class UnexpectedEofError(DecodeError):
    pass


class InvalidUtf8Error(DecodeError):
    pass


class SizeOverflowError(DecodeError):
    pass


class UnresolvedReferenceError(DecodeError):
    pass


class CursorRangeError(DecodeError):
    pass


class ConstraintError(DecodeError):
    pass
