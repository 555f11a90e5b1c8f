"""
Amazon Bedrock LLM client backing the optional LLM debate judge.
"""

from typing import Optional

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
    """Single-shot Bedrock Converse client with a bounded timeout."""

    def __init__(self, config: BedrockLLMConfig):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
        """
        self.config = config
        self.model_id = config.model_id

        self.bedrock_runtime = boto3.client('bedrock-runtime',
                                            region_name=config.region,
                                            config=BotoConfig(connect_timeout=config.timeout,
                                                              read_timeout=config.timeout,
                                                              retries={
                                                                  'total_max_attempts': 1,
                                                                  'mode': 'standard'
                                                              }))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def complete(self, prompt: str, system_prompt: str, max_tokens: Optional[int] = None) -> str:
        """
        Send one user prompt and return the model's text.

        Args:
            prompt: User message text
            system_prompt: System prompt for the conversation
            max_tokens: Maximum tokens to generate (uses config default if None)

        Returns:
            Response text

        Raises:
            BedrockLLMError: If the call fails or returns no text
        """
        try:
            response = self.bedrock_runtime.converse(modelId=self.model_id,
                                                     messages=[{
                                                         'role': 'user',
                                                         'content': [{
                                                             'text': prompt
                                                         }]
                                                     }],
                                                     system=[{
                                                         'text': system_prompt
                                                     }],
                                                     inferenceConfig={
                                                         'maxTokens': max_tokens or self.config.max_tokens,
                                                         'temperature': self.config.temperature
                                                     })
        except (ClientError, BotoCoreError) as e:
            logger.error(f'Bedrock LLM call failed: {e}')
            raise BedrockLLMError(f'Bedrock LLM call failed: {e}')

        blocks = response.get('output', {}).get('message', {}).get('content', [])
        text = ''.join(block.get('text', '') for block in blocks)
        if not text.strip():
            raise BedrockLLMError('Bedrock LLM returned an empty response')

        logger.debug(f'Bedrock LLM response generated (length: {len(text)})')
        return text

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            return bool(self.complete('Hi', "Respond with just 'OK'.", max_tokens=10))

        except Exception as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
