"""Bedrock runtime client shared by the Titan embedder and the completion client."""

import json
import logging
from collections.abc import Iterator
from typing import Any

import boto3
from botocore.config import Config as BotoConfig

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "bedrock-2023-05-31"


def _log_invoke_error(model_id: str, error: Exception) -> None:
    """Log a Bedrock failure together with the most likely fix."""
    error_msg = str(error)
    error_str_lower = error_msg.lower()

    if "certificate" in error_str_lower or "ssl" in error_str_lower:
        logger.error(
            f"Error invoking Bedrock model {model_id}: {error_msg}\n"
            f"SSL certificate error. Install your platform's CA certificates, or set "
            f"REQUESTS_CA_BUNDLE / AWS_CA_BUNDLE."
        )
    elif "inference profile" in error_str_lower or "validationexception" in error_str_lower:
        logger.error(
            f"Error invoking Bedrock model {model_id}: {error_msg}\n"
            f"The model is not enabled for this account, or it needs an inference profile.\n"
            f"  • AWS Bedrock Console → Model access → enable the model\n"
            f"  • Or set Q_COMPLETION_MODEL to an inference profile ARN:\n"
            f"    arn:aws:bedrock:REGION::inference-profile/MODEL_ID"
        )
    else:
        logger.error(f"Error invoking Bedrock model {model_id}: {error_msg}")


class BedrockClient:
    """Client for the AWS Bedrock runtime."""

    def __init__(
        self,
        aws_access_key_id: str | None = None,
        aws_secret_access_key: str | None = None,
        aws_region: str = "us-east-1",
        read_timeout: float = 60.0,
    ):
        """
        Initialize the Bedrock client.

        Args:
            aws_access_key_id: AWS access key ID (optional, uses credentials chain if not provided).
            aws_secret_access_key: AWS secret access key (optional, uses credentials chain if not provided).
            aws_region: AWS region for Bedrock.
            read_timeout: Socket read timeout in seconds.
        """
        boto_config = BotoConfig(
            region_name=aws_region,
            # backoff lives in qcli.retry
            retries={"max_attempts": 1, "mode": "standard"},
            read_timeout=read_timeout,
            tcp_keepalive=True,
        )

        client_kwargs: dict[str, Any] = {
            "service_name": "bedrock-runtime",
            "region_name": aws_region,
            "config": boto_config,
        }
        if aws_access_key_id and aws_secret_access_key:
            client_kwargs["aws_access_key_id"] = aws_access_key_id
            client_kwargs["aws_secret_access_key"] = aws_secret_access_key

        try:
            self.client = boto3.client(**client_kwargs)
        except Exception as e:
            logger.error(f"Failed to initialize Bedrock client: {e}")
            raise

        logger.debug(f"Initialized Bedrock client for region {aws_region}")

    def invoke_json(self, model_id: str, body: dict[str, Any]) -> dict[str, Any]:
        """
        Invoke a model with a JSON body and return the parsed JSON response.

        Args:
            model_id: The Bedrock model ID to invoke.
            body: Request body.

        Returns:
            Parsed response body.
        """
        try:
            response = self.client.invoke_model(
                modelId=model_id,
                body=json.dumps(body).encode("utf-8"),
                contentType="application/json",
                accept="application/json",
            )
            return json.loads(response["body"].read())
        except Exception as e:
            _log_invoke_error(model_id, e)
            raise

    def stream_messages(
        self,
        model_id: str,
        messages: list[dict[str, str]],
        system: str | None = None,
        max_tokens: int = 1024,
        temperature: float = 0.0,
    ) -> Iterator[dict[str, Any]]:
        """
        Stream an Anthropic Messages API call.

        Args:
            model_id: Model ID or inference profile ARN.
            messages: Alternating user/assistant turns, ending with a user turn.
            system: Optional system prompt.
            max_tokens: Maximum tokens for the response.
            temperature: Sampling temperature.

        Yields:
            Decoded stream events (``message_start``, ``content_block_delta``,
            ``message_delta``, ...).
        """
        body: dict[str, Any] = {
            "anthropic_version": ANTHROPIC_VERSION,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if system:
            body["system"] = system

        logger.debug(f"🚀 Streaming Bedrock model {model_id} ({len(messages)} messages)")

        try:
            response = self.client.invoke_model_with_response_stream(
                modelId=model_id,
                body=json.dumps(body).encode("utf-8"),
                contentType="application/json",
                accept="application/json",
            )
        except Exception as e:
            _log_invoke_error(model_id, e)
            raise

        for event in response["body"]:
            chunk = event.get("chunk")
            if chunk is None:
                continue
            yield json.loads(chunk["bytes"])
