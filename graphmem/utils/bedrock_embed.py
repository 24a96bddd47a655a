"""
Amazon Bedrock embedding client wrapper with retry logic and error handling.
"""

import json
import random
import time
from typing import List

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockEmbedConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class BedrockEmbedError(Exception):
    """Custom exception for Bedrock embedding errors."""
    pass


class BedrockEmbed:
    """Amazon Bedrock embedding client for entity names and memory texts."""

    def __init__(self, config: BedrockEmbedConfig, client=None):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
            client: Pre-built bedrock-runtime client (optional)
        """
        self.config = config
        self.model_id = config.model_id
        self.dimension = config.dimension

        if client is None:
            client = boto3.client(service_name='bedrock-runtime',
                                  region_name=config.region,
                                  config=BotoConfig(connect_timeout=config.timeout,
                                                    read_timeout=config.timeout,
                                                    retries={'max_attempts': 0}))
        self.bedrock = client

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    def _call_with_retry(self, data: dict) -> dict:
        """
        Make a Bedrock API call with retry logic.

        Args:
            data: Request data dictionary

        Returns:
            Response dictionary from Bedrock API

        Raises:
            BedrockEmbedError: If all retry attempts fail
        """
        body = json.dumps(data)

        for attempt in range(self.config.retry_attempts):
            try:
                response = self.bedrock.invoke_model(body=body,
                                                     modelId=self.model_id,
                                                     accept='application/json',
                                                     contentType='application/json')
                return json.loads(response.get('body').read())

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock Embed attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts: {e}') from e

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock Embed: {e}')
                raise BedrockEmbedError(f'Unexpected Bedrock Embed error: {e}') from e

        raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts')

    def _request_body(self, text: str, input_type: str) -> dict:
        model = self.model_id.lower()
        if 'titan' in model:
            return {'inputText': text, 'dimensions': self.dimension}
        if 'cohere' in model:
            if self.dimension != 1024:
                raise BedrockEmbedError(f'Cohere models only support 1024 dimensions, got {self.dimension}')
            return {'input_type': input_type, 'texts': [text]}
        raise BedrockEmbedError(f'Unsupported embedding model: {self.model_id}')

    def _embed(self, text: str, input_type: str) -> List[float]:
        if not text or not text.strip():
            raise BedrockEmbedError('Cannot embed empty text')

        response = self._call_with_retry(self._request_body(text, input_type))
        if 'embedding' in response:
            vector = response['embedding']
        else:
            embeddings = response.get('embeddings') or []
            vector = embeddings[0] if embeddings else []

        if len(vector) != self.dimension:
            raise BedrockEmbedError(f'Expected embedding of length {self.dimension}, got {len(vector)}')
        return vector

    def embed(self, text: str) -> List[float]:
        """
        Embed a text with the document input type.

        Args:
            text: Text to embed

        Returns:
            List of embedding values of length `dimension`

        Raises:
            BedrockEmbedError: If embedding generation fails
        """
        return self._embed(text, 'search_document')

    def embed_query(self, text: str) -> List[float]:
        """Embed a search query; Cohere models distinguish query from document inputs."""
        return self._embed(text, 'search_query')
