from __future__ import annotations


class CRPError(Exception):
    pass


class NoRoutesDefinedError(CRPError):
    """A backend's metadata yielded no router definitions."""

    def __init__(self, backend: str):
        super().__init__(f"No router labels found for backend '{backend}'.")
        self.backend = backend


class DirectoryQueryError(CRPError):
    def __init__(self, partition: str, region: str, detail: str):
        super().__init__(f"Failed to list backends in {partition}/{region}: {detail}")
        self.partition = partition
        self.region = region


class CredentialFetchError(CRPError):
    pass


class MetadataServerUnavailable(CredentialFetchError):
    """The platform-local token source does not exist in this environment."""


class InvalidCredentialFormatError(CredentialFetchError):
    pass


class HandoffTimeoutError(CRPError):
    pass


class MalformedMetadataWarning(UserWarning):
    """Non-fatal problem with a single routing label; a default was substituted."""
