"""Error taxonomy and user-facing error formatting."""

from typing import Literal, TypedDict

from rich.markup import escape

ErrorType = Literal[
    "credentials_missing",
    "network_error",
    "rate_limit",
    "api_error",
    "cache_error",
    "unknown",
]


class QCliError(Exception):
    """Base class for qcli errors."""


class EmbeddingUnavailable(QCliError):
    """The embedding client could not produce a vector (after retries)."""


class DimensionMismatch(QCliError, ValueError):
    """Two embeddings, or an embedding and its dimension tag, disagree in length."""

    def __init__(self, expected: int, actual: int, message: str | None = None):
        self.expected = expected
        self.actual = actual
        super().__init__(message or f"Embedding dimension mismatch: {expected} vs {actual}")


class StoreUnavailable(QCliError):
    """The storage backend failed (connection, disk, protocol)."""


class ErrorInfo(TypedDict):
    """Structured error information for display."""

    type: ErrorType
    message: str
    suggestion: str | None


def analyze_error(error: BaseException | object) -> ErrorInfo:
    """
    Classify an error into a user-friendly category.

    Args:
        error: Any exception (or stray value) surfaced to the CLI.

    Returns:
        ErrorInfo with type, message and an optional suggestion.
    """
    if isinstance(error, StoreUnavailable):
        return {
            "type": "cache_error",
            "message": f"Storage backend unavailable: {error}",
            "suggestion": "Check that Redis is running and Q_REDIS_URL points at it.",
        }

    if isinstance(error, BaseException):
        message = str(error).lower()
        name = type(error).__name__.lower()

        if (
            "nocredentials" in name
            or "unable to locate credentials" in message
            or "unrecognizedclient" in message
            or "security token" in message
            or "accessdenied" in message
            or "401" in message
            or "unauthorized" in message
        ):
            return {
                "type": "credentials_missing",
                "message": "AWS credentials are missing or invalid",
                "suggestion": (
                    "Configure the AWS credential chain, or set Q_AWS_ACCESS_KEY_ID and "
                    "Q_AWS_SECRET_ACCESS_KEY."
                ),
            }

        if "throttl" in message or "rate limit" in message or "429" in message:
            return {
                "type": "rate_limit",
                "message": "API rate limit exceeded",
                "suggestion": "Wait a moment before trying again, or check your Bedrock quotas.",
            }

        if (
            "connection" in message
            or "endpointconnection" in name
            or "timed out" in message
            or "timeout" in name
            or "network" in message
            or "econnrefused" in message
            or "enotfound" in message
        ):
            return {
                "type": "network_error",
                "message": "Network connection failed",
                "suggestion": "Check your internet connection and try again.",
            }

        if any(code in message for code in ("500", "502", "503", "504")) or (
            "internal server error" in message or "serviceunavailable" in message
        ):
            return {
                "type": "api_error",
                "message": "Model API server error",
                "suggestion": "This is usually temporary. Wait a moment and try again.",
            }

        if "quota" in message or "billing" in message or "validationexception" in message:
            return {
                "type": "api_error",
                "message": str(error),
                "suggestion": "Check model access and quotas in the AWS Bedrock console.",
            }

        return {"type": "unknown", "message": str(error), "suggestion": None}

    return {"type": "unknown", "message": str(error), "suggestion": None}


def format_error(error: BaseException | object) -> str:
    """Render an error as rich markup for the console."""
    info = analyze_error(error)
    output = f"[red]Error: {escape(info['message'])}[/red]"
    if info["suggestion"]:
        output += f"\n[yellow]Suggestion: {escape(info['suggestion'])}[/yellow]"
    return output
