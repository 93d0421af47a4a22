"""
Amazon Bedrock LLM client wrapper with retry logic and error handling.
"""

import time
from typing import Any, Dict, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockLLMConfig
from .logging_config import get_logger
from .retry import backoff_delay, is_transient_error

logger = get_logger(__name__)


class BedrockLLMError(Exception):
    """Custom exception for Bedrock LLM errors."""
    pass


class BedrockLLM:
    """Amazon Bedrock LLM client with retry logic and error handling."""

    def __init__(self, config: BedrockLLMConfig, client=None):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
            client: Pre-built bedrock-runtime client (created from config if None)
        """
        self.config = config
        self.model_id = config.model_id
        self.last_metrics: Optional[Dict[str, Any]] = None

        # Create Bedrock runtime client with timeout configuration
        self.bedrock_runtime = client or boto3.client(
            'bedrock-runtime',
            region_name=config.region,
            config=BotoConfig(
                connect_timeout=config.connect_timeout,
                read_timeout=config.read_timeout,
                retries={'max_attempts': 0}  # We handle retries manually
            ))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def complete(self,
                 system_prompt: str,
                 user_prompt: str,
                 max_tokens: Optional[int] = None,
                 temperature: Optional[float] = None,
                 stop_sequences: Optional[List[str]] = None) -> str:
        """
        Run a single-turn completion with retry logic.

        Args:
            system_prompt: System prompt for the conversation
            user_prompt: The user turn
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None)
            stop_sequences: Stop sequences for generation

        Returns:
            Generated text

        Raises:
            BedrockLLMError: If the call fails permanently or retries run out
        """
        max_tokens = max_tokens or self.config.max_tokens
        temperature = self.config.temperature if temperature is None else temperature
        stop_sequences = stop_sequences or []

        messages = [{'role': 'user', 'content': [{'text': user_prompt}]}]
        system = [{'text': system_prompt}]
        inf_params = {
            'maxTokens': max_tokens,
            'temperature': temperature,
            'stopSequences': stop_sequences,
        }
        attempts = max(1, self.config.retry_attempts)

        for attempt in range(attempts):
            try:
                logger.debug(f'Bedrock LLM request attempt {attempt + 1}/{attempts}')

                stream = self.bedrock_runtime.converse_stream(modelId=self.model_id,
                                                              messages=messages,
                                                              system=system,
                                                              inferenceConfig=inf_params).get('stream')

                msg = ''
                if stream:
                    for event in stream:
                        if 'contentBlockDelta' in event:
                            msg += event['contentBlockDelta']['delta'].get('text', '')
                        if 'metadata' in event:
                            metadata = event['metadata']
                            self.last_metrics = {**metadata.get('usage', {}), **metadata.get('metrics', {})}

                logger.debug(f'Bedrock LLM response generated successfully (length: {len(msg)})')
                return msg

            except (ClientError, BotoCoreError) as e:
                if not is_transient_error(e):
                    logger.error(f'Bedrock LLM request rejected: {e}')
                    raise BedrockLLMError(f'Bedrock LLM request rejected: {e}')

                logger.warning(f'Bedrock LLM attempt {attempt + 1}/{attempts} failed: {e}')
                if attempt < attempts - 1:
                    time.sleep(backoff_delay(self.config.retry_delay, attempt))
                else:
                    raise BedrockLLMError(f'Bedrock LLM failed after {attempts} attempts: {e}')

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock LLM: {e}')
                raise BedrockLLMError(f'Unexpected Bedrock LLM error: {e}')

        raise BedrockLLMError(f'Bedrock LLM failed after {attempts} attempts')

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.complete(system_prompt="You are a helpful assistant. Respond with just 'OK'.",
                                     user_prompt='Hi',
                                     max_tokens=10,
                                     temperature=0.0)
            return len(response.strip()) > 0

        except Exception as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
