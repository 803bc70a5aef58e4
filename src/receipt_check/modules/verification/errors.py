from __future__ import annotations


class FetchError(RuntimeError):
    pass


class VerificationError(RuntimeError):
    pass
