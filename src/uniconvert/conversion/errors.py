"""Failure kinds that terminate a conversion request.

Every error carries the HTTP status and the human-readable message the relay
returns as ``{"message": ...}``. None of them is retried.
"""


class RelayError(Exception):
    status_code = 500
    default_message = "Internal server error."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ClientInputError(RelayError):
    status_code = 400
    default_message = "Invalid request."


class PayloadTooLarge(ClientInputError):
    status_code = 413
    default_message = "Uploaded file is too large."


class ConfigurationError(RelayError):
    default_message = "Server configuration error: conversion provider API key missing."


class ProviderProtocolError(RelayError):
    default_message = "Conversion job creation failed or returned an invalid response."


class ProviderRequestError(RelayError):
    default_message = "Conversion service error."


class UploadTargetTimeout(RelayError):
    default_message = (
        "Failed to get upload URL from the conversion provider after multiple attempts. "
        "Please try again later."
    )


class ProviderJobFailed(RelayError):
    default_message = "Conversion job failed with unknown error."


class CompletionTimeout(RelayError):
    default_message = "File conversion timed out on the conversion provider."


class ArtifactResolutionError(RelayError):
    default_message = "Could not retrieve converted file URL from the conversion provider."


class StreamError(RelayError):
    default_message = "Error streaming converted file to client."


class UnexpectedRelayError(RelayError):
    pass
