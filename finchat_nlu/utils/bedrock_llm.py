"""
Amazon Bedrock completion client used for the category gate and conversational fallback.
"""

import random
import time
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockLLMConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class BedrockLLMError(Exception):
    """Custom exception for Bedrock LLM errors."""
    pass


class BedrockLLM:
    """Amazon Bedrock LLM client with retry logic and error handling."""

    def __init__(self, config: BedrockLLMConfig):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
        """
        self.config = config
        self.model_id = config.model_id

        # Chat turns are interactive, so keep timeouts short and retry ourselves
        self.bedrock_runtime = boto3.client('bedrock-runtime',
                                            region_name=config.region,
                                            config=BotoConfig(connect_timeout=10, read_timeout=60, retries={'max_attempts': 0}))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def generate_response(self,
                          messages: List[Dict[str, Any]],
                          system_prompt: str,
                          max_tokens: Optional[int] = None,
                          temperature: Optional[float] = None,
                          stop_sequences: Optional[List[str]] = None,
                          model_id: Optional[str] = None) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Generate response using Bedrock LLM with retry logic.

        Args:
            messages: List of message dictionaries in Bedrock Converse format
            system_prompt: System prompt for the conversation
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None; 0 is honored)
            stop_sequences: Stop sequences for generation
            model_id: Model override (uses config default if None)

        Returns:
            Tuple of (response_text, invoke_metrics)

        Raises:
            BedrockLLMError: If all retry attempts fail
        """
        max_tokens = max_tokens if max_tokens is not None else self.config.max_tokens
        temperature = temperature if temperature is not None else self.config.temperature
        model_id = model_id or self.model_id

        inf_params = {
            'maxTokens': max_tokens,
            'temperature': temperature,
            'stopSequences': stop_sequences or [],
        }
        system = [{'text': system_prompt}] if system_prompt else []

        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock LLM request attempt {attempt + 1}/{self.config.retry_attempts} ({model_id})')

                stream = self.bedrock_runtime.converse_stream(modelId=model_id,
                                                              messages=messages,
                                                              system=system,
                                                              inferenceConfig=inf_params).get('stream')

                msg = ''
                invoke_metrics = None

                if stream:
                    for event in stream:
                        if 'contentBlockDelta' in event:
                            msg += event['contentBlockDelta']['delta'].get('text', '')
                        if 'metadata' in event:
                            invoke_metrics = {**event['metadata'].get('usage', {}), **event['metadata'].get('metrics', {})}

                logger.debug(f'Bedrock LLM response generated successfully (length: {len(msg)})')
                return msg, invoke_metrics

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock LLM attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts: {e}')

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock LLM: {e}')
                raise BedrockLLMError(f'Unexpected Bedrock LLM error: {e}')

        raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts')

    def complete(self,
                 messages: List[Dict[str, Any]],
                 temperature: Optional[float] = None,
                 max_tokens: Optional[int] = None,
                 model_id: Optional[str] = None,
                 stop_sequences: Optional[List[str]] = None) -> str:
        """
        Chat-style completion over role/content messages.

        System messages are folded into the system prompt and plain-string content is
        wrapped into Converse content blocks.

        Args:
            messages: Messages with 'role' in system/user/assistant and str or block-list 'content'
            temperature: Sampling temperature (uses config default if None)
            max_tokens: Maximum tokens to generate
            model_id: Model override

        Returns:
            Generated text

        Raises:
            BedrockLLMError: If the call fails
        """
        system_parts = []
        converse_messages = []
        for message in messages:
            content = message.get('content', '')
            if message.get('role') == 'system':
                system_parts.append(content if isinstance(content, str) else ' '.join(b.get('text', '') for b in content))
                continue
            if isinstance(content, str):
                content = [{'text': content}]
            converse_messages.append({'role': message['role'], 'content': content})

        text, _ = self.generate_response(messages=converse_messages,
                                         system_prompt='\n\n'.join(system_parts),
                                         max_tokens=max_tokens,
                                         temperature=temperature,
                                         stop_sequences=stop_sequences,
                                         model_id=model_id)
        return text

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.complete([{'role': 'system', 'content': "Respond with just 'OK'."}, {'role': 'user', 'content': 'Hi'}],
                                     temperature=0.0,
                                     max_tokens=10)
            return len(response.strip()) > 0

        except Exception as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
