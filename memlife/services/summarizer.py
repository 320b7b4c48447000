"""
Summarization and LLM extraction service.

Every LLM path degrades: extraction returns empty lists, conversation summaries fall back to
a keyword summary, and text compression returns its input unchanged so callers can reject it.
"""

import math
from typing import Any, Dict, List, Optional, Tuple

from ..models.core import (ConversationSummary, EntityType, ExtractedEntity, MemoryInput, MemoryType, Message,
                           clamp01)
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

MIN_EXTRACTION_LENGTH = 20
SUMMARY_MESSAGE_THRESHOLD = 20
SUMMARY_DURATION_SECONDS = 3600
SUMMARY_LENGTH_THRESHOLD = 10000
MESSAGE_PREVIEW_CHARS = 500

FALLBACK_KEYWORDS = ('学校', '文书', 'GPA', '活动', '推荐', '截止', '申请', '竞赛', '夏校', '实习', '考试', '材料', '时间线')

_CATEGORY_HELP = ('category is one of school|essay|profile|competition|summer_program|internship|material|timeline '
                  '(competition = contests, summer_program = summer schools, internship = internships, '
                  'material = application materials, timeline = planning dates)')

EXTRACTION_PROMPT = f"""
You analyse a single message from a student asking for study-abroad advice.
Extract only facts and preferences the user states explicitly. Do not infer.

Return JSON with this exact format:
```json
{{
  "memories": [
    {{"type": "FACT|PREFERENCE|DECISION", "category": "school", "content": "what was stated", "importance": 0.8}}
  ],
  "entities": [
    {{"type": "SCHOOL|PERSON|EVENT|TOPIC", "name": "entity name", "description": "short description"}}
  ]
}}
```
{_CATEGORY_HELP}.
Return empty arrays if nothing is worth remembering."""

SUMMARY_PROMPT = f"""
You are an expert at analysing study-abroad advisory conversations.

Return JSON with this exact format:
```json
{{
  "summary": "two or three sentence summary",
  "key_topics": ["main topics"],
  "decisions": ["decisions made, e.g. school list, essay topic, competition plans"],
  "next_steps": ["recommended next actions"],
  "facts": [
    {{"type": "FACT|PREFERENCE|DECISION", "category": "school", "content": "what was stated", "importance": 0.8}}
  ],
  "entities": [
    {{"type": "SCHOOL|PERSON|EVENT|TOPIC", "name": "entity name", "description": "short description"}}
  ]
}}
```
{_CATEGORY_HELP}."""

COMPRESS_PROMPT = """
You compress stored memories about a student. Keep every concrete fact, number, school name and date.
Drop repetition and filler. Answer with the compressed text only, in the language of the input."""


def map_memory_type(value: Any) -> MemoryType:
    try:
        return MemoryType(str(value).upper())
    except ValueError:
        return MemoryType.FACT


def map_entity_type(value: Any) -> EntityType:
    try:
        return EntityType(str(value).upper())
    except ValueError:
        return EntityType.TOPIC


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _importance(value: Any) -> float:
    """LLM importance as a float in [0, 1]; 0.5 when missing or not numeric."""
    if value is None or value == '' or isinstance(value, bool):
        return 0.5
    try:
        number = float(value)
    except (TypeError, ValueError):
        number = math.nan
    if math.isnan(number):
        logger.debug(f'Ignoring non-numeric importance from LLM: {value!r}')
        return 0.5
    return clamp01(number)


def _parse_memories(items: Any) -> List[MemoryInput]:
    memories = []
    for item in _as_list(items):
        if not isinstance(item, dict) or not str(item.get('content', '')).strip():
            continue
        memories.append(
            MemoryInput(type=map_memory_type(item.get('type')),
                        category=item['category'] if isinstance(item.get('category'), str) else None,
                        content=str(item['content']).strip(),
                        importance=_importance(item.get('importance'))))
    return memories


def _parse_entities(items: Any) -> List[ExtractedEntity]:
    entities = []
    for item in _as_list(items):
        if not isinstance(item, dict) or not str(item.get('name', '')).strip():
            continue
        relations = [
            rel.get('target_name') if isinstance(rel, dict) else str(rel) for rel in _as_list(item.get('relations'))
        ]
        entities.append(
            ExtractedEntity(type=map_entity_type(item.get('type')),
                            name=str(item['name']).strip(),
                            source='llm',
                            description=item.get('description'),
                            attributes=item.get('attributes') if isinstance(item.get('attributes'), dict) else {},
                            relations=[name for name in relations if name]))
    return entities


class Summarizer:
    """Conversation summaries, LLM extraction and text compression backed by Bedrock."""

    def __init__(self, llm: Optional[BedrockLLM] = None):
        """
        Initialize the summarizer.

        Args:
            llm: Bedrock LLM client; without one every operation uses its fallback
        """
        self.llm = llm

    def extract_from_message(self, content: str) -> Tuple[List[MemoryInput], List[ExtractedEntity]]:
        """
        Ask the LLM for memories and entities stated in a user message.

        Args:
            content: Message text

        Returns:
            Tuple of (memories, entities); both empty on failure or malformed output
        """
        if self.llm is None or len(content.strip()) < MIN_EXTRACTION_LENGTH:
            return [], []

        try:
            parsed = self.llm.generate_json(content, EXTRACTION_PROMPT, max_tokens=500)
        except BedrockLLMError as e:
            logger.error(f'LLM extraction failed: {e}')
            return [], []

        if not isinstance(parsed, dict):
            logger.warning('LLM extraction returned no JSON object')
            return [], []

        return _parse_memories(parsed.get('memories')), _parse_entities(parsed.get('entities'))

    def summarize_conversation(self, messages: List[Message]) -> ConversationSummary:
        """
        Summarize a conversation and extract its facts and entities.

        Args:
            messages: Conversation messages, oldest first

        Returns:
            ConversationSummary; a keyword summary when the LLM is unavailable
        """
        if not messages:
            return ConversationSummary(summary='')
        if self.llm is None:
            return self.fallback_summary(messages)

        lines = []
        for message in messages:
            role = '用户' if message.role == 'user' else 'AI'
            text = message.content[:MESSAGE_PREVIEW_CHARS]
            if len(message.content) > MESSAGE_PREVIEW_CHARS:
                text += '...'
            lines.append(f'[{role}]: {text}')

        try:
            parsed = self.llm.generate_json('Analyse this conversation:\n\n' + '\n\n'.join(lines),
                                            SUMMARY_PROMPT,
                                            max_tokens=1500)
        except BedrockLLMError as e:
            logger.error(f'Failed to generate summary: {e}')
            return self.fallback_summary(messages)

        if not isinstance(parsed, dict):
            logger.warning('Summary response was not a JSON object, using keyword summary')
            return self.fallback_summary(messages)

        return ConversationSummary(summary=str(parsed.get('summary') or ''),
                                   key_topics=_as_list(parsed.get('key_topics')),
                                   decisions=_as_list(parsed.get('decisions')),
                                   next_steps=_as_list(parsed.get('next_steps')),
                                   facts=_parse_memories(parsed.get('facts')),
                                   entities=_parse_entities(parsed.get('entities')))

    def fallback_summary(self, messages: List[Message]) -> ConversationSummary:
        """Keyword-based summary used when no LLM answer is available."""
        topics: Dict[str, None] = {}
        for message in messages:
            if message.role != 'user':
                continue
            for keyword in FALLBACK_KEYWORDS:
                if keyword in message.content:
                    topics[keyword] = None

        topic_text = '、'.join(topics) or '留学相关话题'
        return ConversationSummary(summary=f'对话包含 {len(messages)} 条消息，主要讨论了 {topic_text}。', key_topics=list(topics))

    def summarize_texts(self, texts: List[str]) -> str:
        """
        Merge several memory texts into one compressed text.

        Args:
            texts: Memory contents

        Returns:
            Compressed text, or the texts joined unchanged when the LLM is unavailable
        """
        joined = '\n'.join(texts)
        if self.llm is None or not texts:
            return joined
        return self._compress('Merge these related memories into one:\n' + '\n'.join(f'- {t}' for t in texts), joined)

    def summarize_text(self, text: str, max_tokens: int = 50) -> str:
        """
        Compress a single text to roughly ``max_tokens`` tokens.

        Returns:
            Compressed text, or the input unchanged when the LLM is unavailable
        """
        if self.llm is None or not text:
            return text
        return self._compress(f'Compress this memory to at most {max_tokens} tokens:\n{text}', text, max_tokens * 2)

    def _compress(self, prompt: str, fallback: str, max_tokens: int = 500) -> str:
        messages = [{'role': 'user', 'content': [{'text': prompt}]}]
        try:
            response, _ = self.llm.generate_response(messages=messages, system_prompt=COMPRESS_PROMPT, max_tokens=max_tokens)
        except BedrockLLMError as e:
            logger.warning(f'Compression unavailable, keeping original text: {e}')
            return fallback
        return response.strip() or fallback

    def should_summarize(self, messages: List[Message]) -> bool:
        """Whether a conversation is long enough to warrant a stored summary."""
        if len(messages) > SUMMARY_MESSAGE_THRESHOLD:
            return True
        if messages:
            duration = (messages[-1].created_at - messages[0].created_at).total_seconds()
            if duration > SUMMARY_DURATION_SECONDS:
                return True
        return sum(len(m.content) for m in messages) > SUMMARY_LENGTH_THRESHOLD
