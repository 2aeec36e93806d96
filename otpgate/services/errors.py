from __future__ import annotations


class OtpError(Exception):
    """Base for OTP issuance/verification failures. str(exc) is client-safe."""


class MissingFields(OtpError): ...
class OtpNotFound(OtpError): ...
class OtpExpired(OtpError): ...
class AttemptsExceeded(OtpError): ...
class OtpMismatch(OtpError): ...


class StoreError(OtpError):
    """Insert/update against the record store failed. Details stay in the server log."""
