"""
Amazon Bedrock LLM client wrapper with retry logic and error handling.
"""

import json
import random
import time
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockLLMConfig
from .llm_base import LLMBase, LLMResponse, ToolCall
from .logging_config import get_logger

logger = get_logger(__name__)

JSON_PREFILL = '```json'
JSON_STOP = '```'


class BedrockLLMError(Exception):
    """Custom exception for Bedrock LLM errors."""
    pass


class BedrockLLM(LLMBase):
    """Amazon Bedrock LLM client built on the Converse API."""

    def __init__(self, config: BedrockLLMConfig, client=None):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
            client: Pre-built bedrock-runtime client (optional)
        """
        self.config = config
        self.model_id = config.model_id

        if client is None:
            client = boto3.client('bedrock-runtime',
                                  region_name=config.region,
                                  config=BotoConfig(
                                      connect_timeout=600,
                                      read_timeout=600,
                                      retries={'max_attempts': 0}  # Retries are handled below
                                  ))
        self.bedrock_runtime = client

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    @staticmethod
    def _to_converse_messages(messages: List[Dict[str, str]]) -> Tuple[List[Dict[str, str]], List[Dict[str, Any]]]:
        """Split role-tagged messages into Converse system blocks and turns.

        Consecutive turns with the same role are merged, Converse rejects them otherwise.
        """
        system = []
        turns = []
        for message in messages:
            role = message.get('role', 'user')
            content = message.get('content') or ''
            if role == 'system':
                system.append({'text': content})
                continue
            if turns and turns[-1]['role'] == role:
                turns[-1]['content'].append({'text': content})
            else:
                turns.append({'role': role, 'content': [{'text': content}]})
        return system, turns

    @staticmethod
    def _to_tool_config(tools: List[Dict[str, Any]]) -> Dict[str, Any]:
        specs = []
        for tool in tools:
            specs.append({
                'toolSpec': {
                    'name': tool['name'],
                    'description': tool.get('description', ''),
                    'inputSchema': {
                        'json': tool.get('parameters', {'type': 'object', 'properties': {}})
                    },
                }
            })
        return {'tools': specs, 'toolChoice': {'auto': {}}}

    @staticmethod
    def _parse_output(response: Dict[str, Any], json_mode: bool) -> LLMResponse:
        blocks = response.get('output', {}).get('message', {}).get('content', [])

        text_parts = []
        tool_calls = []
        for block in blocks:
            if 'toolUse' in block:
                tool_use = block['toolUse']
                tool_calls.append(ToolCall(name=tool_use['name'], arguments=json.dumps(tool_use.get('input', {}))))
            elif 'text' in block:
                text_parts.append(block['text'])

        if tool_calls:
            return LLMResponse(tool_calls=tool_calls)

        text = ''.join(text_parts)
        if json_mode:
            # The prefill is not echoed back, and the closing fence is consumed by the stop sequence
            text = text.strip()
            if text.endswith(JSON_STOP):
                text = text[:-len(JSON_STOP)].strip()
        return LLMResponse(text=text)

    def generate_response(self,
                          messages: List[Dict[str, str]],
                          response_format: Optional[Dict[str, Any]] = None,
                          tools: Optional[List[Dict[str, Any]]] = None) -> LLMResponse:
        """
        Generate response using Bedrock LLM with retry logic.

        Args:
            messages: Role-tagged messages
            response_format: {'type': 'json_object'} to request JSON text (ignored when tools are given)
            tools: Declared tools, each {'name', 'description', 'parameters'}

        Returns:
            LLMResponse carrying either text or tool calls

        Raises:
            BedrockLLMError: If all retry attempts fail
        """
        system, turns = self._to_converse_messages(messages)
        json_mode = bool(response_format and response_format.get('type') == 'json_object' and not tools)

        inf_params = {
            'maxTokens': self.config.max_tokens,
            'temperature': self.config.temperature,
        }

        request = {
            'modelId': self.model_id,
            'messages': turns,
            'inferenceConfig': inf_params,
        }
        if system:
            request['system'] = system
        if tools:
            request['toolConfig'] = self._to_tool_config(tools)
        if json_mode:
            turns.append({'role': 'assistant', 'content': [{'text': JSON_PREFILL}]})
            inf_params['stopSequences'] = [JSON_STOP]

        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock LLM request attempt {attempt + 1}/{self.config.retry_attempts}')

                response = self.bedrock_runtime.converse(**request)
                result = self._parse_output(response, json_mode)

                logger.debug(f'Bedrock LLM response received (tool calls: {len(result.tool_calls)}, '
                             f'stop reason: {response.get("stopReason")})')
                return result

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock LLM attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts: {e}') from e

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock LLM: {e}')
                raise BedrockLLMError(f'Unexpected Bedrock LLM error: {e}') from e

        raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts')
