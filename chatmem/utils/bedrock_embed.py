"""
Amazon Bedrock embedding client wrapper with retry logic and a deterministic fallback.
"""

import json
import time
from typing import List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockEmbedConfig
from .logging_config import get_logger
from .retry import backoff_delay, is_transient_error
from .vector_math import hashed_token_vector

logger = get_logger(__name__)


class BedrockEmbedError(Exception):
    """Custom exception for Bedrock embedding errors."""
    pass


def placeholder_embedding(text: str, dimension: int) -> List[float]:
    """Deterministic stand-in vector used when the embedding service is unavailable.

    Args:
        text: Text to vectorize
        dimension: Output dimensionality

    Returns:
        Unit-norm feature-hashed bag-of-tokens vector
    """
    return hashed_token_vector(text, dimension)


class BedrockEmbed:
    """Amazon Bedrock embedding client with retry logic and error handling."""

    def __init__(self, config: BedrockEmbedConfig, client=None):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
            client: Pre-built bedrock-runtime client (created from config if None)
        """
        self.config = config
        self.model_id = config.model_id
        self.output_embedding_length = config.dimension

        # Create Bedrock runtime client with hard timeouts
        self.bedrock = client or boto3.client(
            service_name='bedrock-runtime',
            region_name=config.region,
            config=BotoConfig(
                connect_timeout=config.connect_timeout,
                read_timeout=config.read_timeout,
                retries={'max_attempts': 0}  # We handle retries manually
            ))

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    def _call_with_retry(self, data: dict) -> dict:
        """
        Make a Bedrock API call, retrying transient failures only.

        Args:
            data: Request data dictionary

        Returns:
            Response dictionary from Bedrock API

        Raises:
            BedrockEmbedError: If the call fails permanently or retries run out
        """
        body = json.dumps(data)
        attempts = max(1, self.config.retry_attempts)

        for attempt in range(attempts):
            try:
                logger.debug(f'Bedrock Embed request attempt {attempt + 1}/{attempts}')

                response = self.bedrock.invoke_model(body=body,
                                                     modelId=self.model_id,
                                                     accept='application/json',
                                                     contentType='application/json')

                result = json.loads(response.get('body').read())
                logger.debug('Bedrock Embed request successful')
                return result

            except (ClientError, BotoCoreError) as e:
                if not is_transient_error(e):
                    logger.error(f'Bedrock Embed request rejected: {e}')
                    raise BedrockEmbedError(f'Bedrock Embed request rejected: {e}')

                logger.warning(f'Bedrock Embed attempt {attempt + 1}/{attempts} failed: {e}')
                if attempt < attempts - 1:
                    time.sleep(backoff_delay(self.config.retry_delay, attempt))
                else:
                    raise BedrockEmbedError(f'Bedrock Embed failed after {attempts} attempts: {e}')

            except json.JSONDecodeError as e:
                logger.error(f'Malformed Bedrock Embed response: {e}')
                raise BedrockEmbedError(f'Malformed Bedrock Embed response: {e}')

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock Embed: {e}')
                raise BedrockEmbedError(f'Unexpected Bedrock Embed error: {e}')

        raise BedrockEmbedError(f'Bedrock Embed failed after {attempts} attempts')

    def _embed(self, text: str, input_type: str) -> List[float]:
        model = self.model_id.lower()
        if 'titan' in model:
            data = {'inputText': text, 'dimensions': self.output_embedding_length}
            response = self._call_with_retry(data)
            embedding = response.get('embedding')

        elif 'cohere' in model:
            if self.output_embedding_length != 1024:
                raise BedrockEmbedError(f'Cohere models only support 1024 dimensions, got {self.output_embedding_length}')

            data = {'input_type': input_type, 'texts': [text]}
            response = self._call_with_retry(data)
            embeddings = response.get('embeddings') or []
            embedding = embeddings[0] if embeddings else None

        else:
            raise BedrockEmbedError(f'Unsupported embedding model: {self.model_id}')

        if not embedding or len(embedding) != self.output_embedding_length:
            raise BedrockEmbedError(f'Embedding response has unexpected shape for model {self.model_id}')
        return [float(v) for v in embedding]

    def _embed_or_placeholder(self, text: str, input_type: str, allow_placeholder: Optional[bool]) -> List[float]:
        if not text or not text.strip():
            logger.warning(f'Empty text provided for {input_type} embedding')
            return [0.0] * self.output_embedding_length

        if allow_placeholder is None:
            allow_placeholder = self.config.placeholder_on_failure

        try:
            return self._embed(text, input_type)
        except BedrockEmbedError as e:
            if not allow_placeholder:
                raise
            logger.warning(f'Using placeholder embedding after failure: {e}')
            return placeholder_embedding(text, self.output_embedding_length)

    def embed_document(self, text: str, allow_placeholder: Optional[bool] = None) -> List[float]:
        """
        Generate embeddings for document text.

        Args:
            text: Text to embed
            allow_placeholder: Return a placeholder vector instead of raising on failure
                (uses config default if None)

        Returns:
            List of embedding values

        Raises:
            BedrockEmbedError: If embedding generation fails and placeholders are not allowed
        """
        return self._embed_or_placeholder(text, 'search_document', allow_placeholder)

    def embed_query(self, text: str, allow_placeholder: Optional[bool] = None) -> List[float]:
        """
        Generate embeddings for query text.

        Args:
            text: Query text to embed
            allow_placeholder: Return a placeholder vector instead of raising on failure
                (uses config default if None)

        Returns:
            List of embedding values

        Raises:
            BedrockEmbedError: If embedding generation fails and placeholders are not allowed
        """
        return self._embed_or_placeholder(text, 'search_query', allow_placeholder)

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock embedding service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_embedding = self.embed_document('test', allow_placeholder=False)
            return len(test_embedding) == self.output_embedding_length

        except Exception as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
