"""Error taxonomy for the confidential portfolio analyzer."""
from __future__ import annotations


class AnalyzerError(Exception):
    """Base error; carries the HTTP status the API maps it to."""

    status_code = 400

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class EncodingError(AnalyzerError):
    """Plaintext is out of the 32-bit unsigned range after scaling."""


class ProofVerificationFailed(AnalyzerError):
    pass


class InvalidAssetCount(AnalyzerError):
    pass


class AssetCountMismatch(AnalyzerError):
    pass


class UnknownScenario(AnalyzerError):
    pass


class NoPortfolioFound(AnalyzerError):
    status_code = 404


class ThresholdsNotSet(AnalyzerError):
    status_code = 409


class AuthorizationDeclined(AnalyzerError):
    status_code = 403


class SignatureExpired(AnalyzerError):
    status_code = 401


class DecryptionRefused(AnalyzerError):
    """The decryption boundary rejected a request for a reason other than expiry."""

    status_code = 403


class UnsupportedProtocol(AnalyzerError):
    """The co-processor is not the confidential protocol this engine targets. Fatal."""

    status_code = 500
