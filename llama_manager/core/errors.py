"""
OpenAI-Compatible Error Handling Module

This module provides exception classes compatible with OpenAI API error format,
plus the domain exceptions raised by the core (presets, engine lifecycle).

Error Response Format:
    {
        "error": {
            "message": "Human-readable error message",
            "type": "error_type",
            "param": "problematic parameter (optional)",
            "code": "specific error code (optional)"
        }
    }

HTTP Exception Classes:
    - OpenAIError: Base class for all OpenAI-compatible errors
    - InvalidRequestError (400): Invalid request or parameter
    - NotFoundError (404): Model, preset or resource not found
    - ConflictError (409): Resource already exists
    - ServerError (500): Internal server error
    - BadGatewayError (502): Engine could not be reached
    - ServiceUnavailableError (503): Engine restart failed, shutting down, etc.

Domain Exception Classes:
    - PresetNotFoundError, PresetConflictError, PresetInUseError, InvalidPresetError
    - EngineStartupError: Engine process failed to start
    - ConfigurationError: Invalid configuration or state file

Usage:
    from llama_manager.core.errors import NotFoundError, ServiceUnavailableError

    raise NotFoundError(f"Model '{model_id}' not found")
    raise ServiceUnavailableError("Server restart failed", code="restart_failed")
"""

from typing import Optional
from fastapi import HTTPException


class OpenAIError(HTTPException):
    """
    Base class for all OpenAI-compatible HTTP errors.

    Follows OpenAI API error response format so clients already integrated
    with OpenAI can handle errors in the same way.

    Attributes:
        status_code: HTTP status code
        message: Human-readable error message
        error_type: Error type per OpenAI format (e.g., "invalid_request_error")
        param: Parameter that caused the error (optional)
        code: Specific error code (optional)
    """

    def __init__(
        self,
        status_code: int,
        message: str,
        error_type: str,
        param: Optional[str] = None,
        code: Optional[str] = None
    ):
        self.message = message
        self.error_type = error_type
        self.param = param
        self.code = code

        detail = {
            "error": {
                "message": message,
                "type": error_type,
                "param": param,
                "code": code
            }
        }

        super().__init__(status_code=status_code, detail=detail)


class InvalidRequestError(OpenAIError):
    """400 - The request is malformed or contains invalid parameters."""

    def __init__(self, message: str, param: Optional[str] = None):
        super().__init__(
            status_code=400,
            message=message,
            error_type="invalid_request_error",
            param=param
        )


class NotFoundError(OpenAIError):
    """404 - The requested model, preset or resource does not exist."""

    def __init__(
        self,
        message: str,
        resource: str = "model",
        code: Optional[str] = None
    ):
        super().__init__(
            status_code=404,
            message=message,
            error_type="not_found_error",
            param=resource,
            code=code
        )


class ConflictError(OpenAIError):
    """409 - The resource already exists."""

    def __init__(self, message: str, resource: str = "preset"):
        super().__init__(
            status_code=409,
            message=message,
            error_type="conflict_error",
            param=resource
        )


class ServerError(OpenAIError):
    """500 - An unexpected error occurred on the server."""

    def __init__(self, message: str = "Internal server error"):
        super().__init__(
            status_code=500,
            message=message,
            error_type="server_error"
        )


class BadGatewayError(OpenAIError):
    """
    502 - The engine could not be reached.

    Raised after connection-level retries to llama-server are exhausted.
    """

    def __init__(self, message: str = "Failed to reach llama server"):
        super().__init__(
            status_code=502,
            message=message,
            error_type="server_error",
            code="engine_unreachable"
        )


class ServiceUnavailableError(OpenAIError):
    """
    503 - Service unavailable error.

    Raised when the engine cannot serve the request right now, most notably
    when a restart required by a preset failed or timed out.
    """

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(
            status_code=503,
            message=message,
            error_type="service_unavailable_error",
            code=code
        )


class PresetNotFoundError(LookupError):
    """Raised when a preset id is not present in the config store."""

    def __init__(self, preset_id: str):
        self.preset_id = preset_id
        super().__init__(f"Preset '{preset_id}' not found")


class PresetConflictError(Exception):
    """Raised when creating or renaming a preset onto an existing id."""

    def __init__(self, preset_id: str):
        self.preset_id = preset_id
        super().__init__(f"Preset '{preset_id}' already exists")


class PresetInUseError(Exception):
    """
    Raised when deleting the preset the engine is currently running.

    Attributes:
        preset_id: The active preset
    """

    def __init__(self, preset_id: str):
        self.preset_id = preset_id
        super().__init__(
            f"Cannot delete preset '{preset_id}' while it is active. "
            "Switch to router mode or another preset first."
        )


class InvalidPresetError(ValueError):
    """Raised when preset fields fail validation (missing fields, bad id)."""


class ModelFileNotFoundError(LookupError):
    """Raised when a preset references a model file that does not exist."""

    def __init__(self, model_path: str):
        self.model_path = model_path
        super().__init__(f"Model file not found: {model_path}")


class EngineStartupError(Exception):
    """
    Raised when the engine process fails to start.

    Attributes:
        reason: Detailed reason for the failure
    """

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Failed to start llama-server: {reason}")


class ConfigurationError(Exception):
    """
    Raised when there is a configuration error.

    This typically indicates a problem with config.json or the state file
    that prevents the application from starting correctly.
    """

    def __init__(self, message: str):
        super().__init__(f"Configuration error: {message}")
