"""
Amazon Bedrock embedding client wrapper with retry logic, caching and error handling.
"""

import hashlib
import json
import random
import threading
import time
from collections import OrderedDict
from typing import Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .circuit_breaker import CircuitBreaker
from .config import BedrockEmbedConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class BedrockEmbedError(Exception):
    """Custom exception for Bedrock embedding errors."""
    pass


def content_hash(text: str) -> str:
    """Cache key for a text: first 16 hex chars of its SHA-256."""
    return hashlib.sha256(text.encode('utf-8')).hexdigest()[:16]


class BedrockEmbed:
    """Amazon Bedrock embedding client with retry logic and error handling.

    ``embed_document``/``embed_query`` raise on failure. ``embed``/``embed_batch`` are the
    fail-soft entry points used by the lifecycle engine: they return empty vectors instead.
    """

    def __init__(self, config: BedrockEmbedConfig, client=None, breaker: Optional[CircuitBreaker] = None):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
            client: Optional pre-built bedrock-runtime client
            breaker: Circuit breaker; built from the config when None
        """
        self.config = config
        self.breaker = breaker or CircuitBreaker('bedrock-embed', config.circuit_failure_threshold,
                                                 config.circuit_reset_seconds)
        self.model_id = config.model_id
        self.output_embedding_length = config.dimension
        self._cache: 'OrderedDict[str, List[float]]' = OrderedDict()
        self._cache_lock = threading.Lock()

        # Create Bedrock runtime client
        if self.enabled:
            self.bedrock = client or boto3.client(service_name='bedrock-runtime', region_name=config.region)
            logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')
        else:
            self.bedrock = client
            logger.warning('Bedrock Embed model not configured, embeddings disabled')

    @property
    def enabled(self) -> bool:
        return bool(self.model_id)

    def _call_with_retry(self, data: dict) -> dict:
        """
        Make a Bedrock API call with retry logic.

        Args:
            data: Request data dictionary

        Returns:
            Response dictionary from Bedrock API

        Raises:
            BedrockEmbedError: If all retry attempts fail or the circuit is open
        """
        if not self.breaker.allow():
            raise BedrockEmbedError('Bedrock Embed circuit is open, skipping call')

        body = json.dumps(data)

        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock Embed request attempt {attempt + 1}/{self.config.retry_attempts}')

                accept = 'application/json'
                content_type = 'application/json'
                response = self.bedrock.invoke_model(body=body, modelId=self.model_id, accept=accept, contentType=content_type)

                result = json.loads(response.get('body').read())
                self.breaker.record_success()
                logger.debug('Bedrock Embed request successful')
                return result

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock Embed attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    self.breaker.record_failure()
                    raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts: {e}')

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock Embed: {e}')
                self.breaker.record_failure()
                raise BedrockEmbedError(f'Unexpected Bedrock Embed error: {e}')

        raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts')

    def _invoke(self, text: str, input_type: str) -> List[float]:
        if 'titan' in self.model_id.lower():
            data = {'inputText': text, 'dimensions': self.output_embedding_length}
            response = self._call_with_retry(data)
            return response.get('embedding', [])

        elif 'cohere' in self.model_id.lower():
            if self.output_embedding_length != 1024:
                raise BedrockEmbedError(f'Cohere models only support 1024 dimensions, got {self.output_embedding_length}')

            data = {'input_type': input_type, 'texts': [text]}
            response = self._call_with_retry(data)
            embeddings = response.get('embeddings', [])
            return embeddings[0] if embeddings else []

        raise BedrockEmbedError(f'Unsupported model for embedding: {self.model_id}')

    def embed_document(self, text: str) -> List[float]:
        """
        Generate embeddings for document text.

        Args:
            text: Text to embed

        Returns:
            List of embedding values

        Raises:
            BedrockEmbedError: If embedding generation fails
        """
        if not text or not text.strip():
            logger.warning('Empty text provided for document embedding')
            return []

        try:
            return self._invoke(text, 'search_document')
        except BedrockEmbedError:
            raise
        except Exception as e:
            logger.error(f'Error generating document embedding: {e}')
            raise BedrockEmbedError(f'Document embedding failed: {e}')

    def embed_query(self, text: str) -> List[float]:
        """
        Generate embeddings for query text.

        Args:
            text: Query text to embed

        Returns:
            List of embedding values

        Raises:
            BedrockEmbedError: If embedding generation fails
        """
        if not text or not text.strip():
            logger.warning('Empty text provided for query embedding')
            return []

        try:
            return self._invoke(text, 'search_query')
        except BedrockEmbedError:
            raise
        except Exception as e:
            logger.error(f'Error generating query embedding: {e}')
            raise BedrockEmbedError(f'Query embedding failed: {e}')

    def _cache_get(self, key: str):
        with self._cache_lock:
            vector = self._cache.get(key)
            if vector is not None:
                self._cache.move_to_end(key)
            return vector

    def _cache_put(self, key: str, vector: List[float]) -> None:
        with self._cache_lock:
            self._cache[key] = vector
            self._cache.move_to_end(key)
            while len(self._cache) > self.config.cache_size:
                self._cache.popitem(last=False)

    def embed(self, text: str) -> List[float]:
        """
        Embed text, returning an empty list when embeddings are unavailable.

        Args:
            text: Text to embed

        Returns:
            Embedding vector, or [] on failure or when disabled
        """
        if not self.enabled or not text or not text.strip():
            return []

        key = content_hash(text)
        cached = self._cache_get(key)
        if cached is not None:
            return cached

        try:
            vector = self.embed_document(text)
        except BedrockEmbedError as e:
            logger.warning(f'Embedding unavailable, continuing without vector: {e}')
            return []

        if vector:
            self._cache_put(key, vector)
        return vector

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Embed several texts, calling the provider only for cache misses.

        Args:
            texts: Texts to embed

        Returns:
            One vector per input text, [] where embedding failed
        """
        results: Dict[int, List[float]] = {}
        misses: Dict[str, List[int]] = {}

        for i, text in enumerate(texts):
            if not self.enabled or not text or not text.strip():
                results[i] = []
                continue
            key = content_hash(text)
            cached = self._cache_get(key)
            if cached is not None:
                results[i] = cached
            else:
                misses.setdefault(key, []).append(i)

        for key, positions in misses.items():
            vector = self.embed(texts[positions[0]])
            for i in positions:
                results[i] = vector

        return [results[i] for i in range(len(texts))]

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock embedding service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_embedding = self.embed_document('test')
            return len(test_embedding) == self.output_embedding_length

        except Exception as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
