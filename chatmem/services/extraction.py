"""
Memory extraction from conversation turns using Bedrock LLMs.

The extractor never raises and never persists. A failed LLM call or an
unparseable response degrades to the rule-based extractor, so callers always
get an ExtractionResult back.
"""

import re
from statistics import mean
from typing import Dict, List, Optional, Tuple

from ..models.core import ExtractedMemory, ExtractionResult
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.config import ExtractionConfig
from ..utils.json_utils import repair_json
from ..utils.logging_config import get_logger
from ..utils.validation import clamp_confidence, clamp_importance, normalize_tags
from .category_registry import CategoryRegistry

logger = get_logger(__name__)

PARAGRAPH_BOUNDARY = re.compile(r'\n\s*\n')
SENTENCE_BOUNDARY = re.compile(r'(?<=[。；\n])|(?<=[.!?] )')
RULE_SENTENCE_BOUNDARY = re.compile(r'(?<=[.!?。！？；;\n])\s*')
_NON_WORD = re.compile(r'[^0-9a-z一-龥]+')

DEDUP_LENGTH_RATIO = 1.5
PROMPT_CONTEXT_TURNS = 3
RULE_CONTENT_LIMIT = 200

METHOD_RANK = {'llm': 0, 'repaired': 1, 'salvaged': 2, 'rule_based': 3}
STRATEGY_METHODS = {'direct': 'llm', 'trimmed': 'repaired', 'closed': 'repaired', 'salvaged': 'salvaged'}

# (family, category, importance, english pattern, chinese pattern)
RULE_FAMILIES = [
    ('personal', 'personal_info', 8, r"\b(my name is|i am called|i'm called|years old|my age|my birthday|i am a (man|woman)|"
     r"i'm a (man|woman))\b", r'(我是|我叫|我的名字|年龄|岁|性别)'),
    ('location', 'personal_info', 7, r"\b(i live in|i'm from|i am from|i moved to|my hometown|based in)\b", r'(我住在|我来自|居住|老家)'),
    ('work', 'work_context', 9, r'\b(my job|i work|working at|my company|my employer|my boss|colleague|coworker|startup|'
     r'ceo|cto|coo|career|my team)\b', r'(项目|创业|工作|职业|公司|CEO|COO|股份)'),
    ('device', 'device_info', 7, r'\b(computer|laptop|macbook|desktop|cpu|gpu|ram|\d+\s?gb|iphone|android phone)\b',
     r'(电脑|MacBook|CPU|内存|配置|硬件)'),
    ('relationships', 'relationships', 8, r'\b(my wife|my husband|married|my girlfriend|my boyfriend|my partner|my daughter|'
     r'my son|my kids|my children|my family|my parents)\b', r'(已婚|结婚|妻子|老婆|丈夫|家庭|伴侣|孩子)'),
    ('health', 'lifestyle', 6, r'\b(my height|my weight|i weigh|exercise|workout|gym|diet|allergic|my health)\b',
     r'(身高|体重|健康|运动|锻炼|减肥|过敏)'),
    ('education', 'education', 7, r'\b(university|college|graduated|my degree|my major|phd|master\'s|bachelor)\b',
     r'(大学|学历|毕业|专业|博士|硕士)'),
    ('preferences', 'preferences', 6, r'\b(i like|i love|i prefer|my favorite|my favourite|i enjoy|i hate|i dislike)\b',
     r'(我喜欢|我爱|偏好|讨厌|最喜欢)'),
]

_COMPILED_FAMILIES = [(family, category, importance, re.compile(english, re.IGNORECASE), re.compile(chinese))
                      for family, category, importance, english, chinese in RULE_FAMILIES]

SYSTEM_PROMPT = """You are a memory extraction system for a personal assistant.
Read the user's message and extract durable facts worth remembering about the user: identity, work, devices,
skills, education, contacts, preferences, interests, relationships, goals, projects, lifestyle, opinions and experiences.

Rules:
- Only extract facts the user states explicitly. Do not infer.
- Each memory is one self-contained sentence written in the third person or as the user's own statement.
- Skip greetings, questions, small talk and anything temporary.
- importance is an integer 1-10 (10 = core identity facts, 1 = trivia).
- category should be one of: {categories}. You may create a new lower_snake_case category when none fits.
- tags are 1-5 short lowercase keywords.

Return exactly one raw JSON object and nothing else. No markdown, no code fences:
{{"reasoning": "short explanation", "confidence": 0.0-1.0, "memories": [{{"content": "...", "category": "...", "importance": 5, "tags": ["..."]}}]}}
If there is nothing worth remembering return {{"reasoning": "...", "confidence": 0.9, "memories": []}}"""  # noqa: E501


def normalize_content(content: str) -> str:
    """Lower-case and drop punctuation and whitespace for similarity checks."""
    return _NON_WORD.sub('', (content or '').lower())


def is_similar(a: ExtractedMemory, b: ExtractedMemory) -> bool:
    """Same category and near-equal normalized content.

    Near-equal means identical, or one contains the other while the longer is
    less than 1.5 times the length of the shorter.
    """
    if a.category != b.category:
        return False
    left, right = normalize_content(a.content), normalize_content(b.content)
    if not left or not right:
        return left == right
    if left == right:
        return True
    shorter, longer = sorted((left, right), key=len)
    return shorter in longer and len(longer) / len(shorter) < DEDUP_LENGTH_RATIO


def deduplicate_memories(memories: List[ExtractedMemory]) -> List[ExtractedMemory]:
    """Collapse similar candidates, keeping the first seen with the higher importance."""
    unique: List[ExtractedMemory] = []
    for memory in memories:
        for index, kept in enumerate(unique):
            if is_similar(kept, memory):
                if memory.importance > kept.importance:
                    unique[index] = ExtractedMemory(content=kept.content,
                                                    category=kept.category,
                                                    tags=normalize_tags(kept.tags + memory.tags),
                                                    importance=memory.importance,
                                                    source_excerpt=kept.source_excerpt)
                break
        else:
            unique.append(memory)
    return unique


def split_into_chunks(text: str, max_length: int) -> List[str]:
    """Split long text on paragraph boundaries, then on sentence or line boundaries.

    Args:
        text: Input text
        max_length: Maximum characters per chunk

    Returns:
        Chunks no longer than max_length (a single unbreakable run is hard-cut)
    """
    if len(text) <= max_length:
        return [text]

    pieces = []
    for paragraph in PARAGRAPH_BOUNDARY.split(text):
        paragraph = paragraph.strip()
        if not paragraph:
            continue
        if len(paragraph) <= max_length:
            pieces.append(paragraph)
            continue
        for sentence in SENTENCE_BOUNDARY.split(paragraph):
            while len(sentence) > max_length:
                pieces.append(sentence[:max_length])
                sentence = sentence[max_length:]
            if sentence.strip():
                pieces.append(sentence)

    chunks: List[str] = []
    current = ''
    for piece in pieces:
        separator = '\n' if current else ''
        if len(current) + len(separator) + len(piece) <= max_length:
            current += separator + piece
        else:
            if current:
                chunks.append(current)
            current = piece
    if current:
        chunks.append(current)
    return chunks


def rule_based_extract(text: str, excerpt_length: int = 300) -> ExtractionResult:
    """Keyword-family extraction over the raw input.

    Emits at most one memory per matched family, using the first sentence that
    matched as the memory content.
    """
    sentences = [s.strip() for s in RULE_SENTENCE_BOUNDARY.split(text or '') if s.strip()]
    excerpt = (text or '')[:excerpt_length]
    memories = []
    for family, category, importance, english, chinese in _COMPILED_FAMILIES:
        for sentence in sentences:
            if english.search(sentence) or chinese.search(sentence):
                memories.append(ExtractedMemory(content=sentence[:RULE_CONTENT_LIMIT],
                                                category=category,
                                                tags=[category, family],
                                                importance=importance,
                                                source_excerpt=excerpt))
                break

    memories = deduplicate_memories(memories)
    logger.debug(f'Rule-based extraction produced {len(memories)} memories')
    return ExtractionResult(memories=memories,
                            reasoning='Rule-based keyword extraction',
                            confidence=0.4 if memories else 0.2,
                            method='rule_based')


class MemoryExtractor:
    """Extract candidate memories from conversation turns with an LLM."""

    def __init__(self, llm: Optional[BedrockLLM], registry: CategoryRegistry, config: ExtractionConfig):
        """
        Initialize the extractor.

        Args:
            llm: Completion client (None means rule-based extraction only)
            registry: Category registry used to normalize and record categories
            config: Extraction settings
        """
        self.llm = llm
        self.registry = registry
        self.config = config

        logger.info('Initialized MemoryExtractor')

    def extract(self, conversation_turns: List[Dict[str, str]]) -> ExtractionResult:
        """Extract memories from the latest user turn, using earlier turns as context.

        Args:
            conversation_turns: List of message dicts with 'role' and 'content' keys

        Returns:
            ExtractionResult, possibly empty; never raises
        """
        target, context = self._select_turns(conversation_turns)
        if not target:
            return ExtractionResult(memories=[], reasoning='No user content to analyze', confidence=0.0)

        try:
            chunks = split_into_chunks(target, self.config.max_content_length)
            if len(chunks) > 1:
                logger.info(f'Input of {len(target)} chars split into {len(chunks)} chunks')

            results = [self._extract_chunk(chunk, context) for chunk in chunks]
            return self._merge(results)

        except Exception as e:
            logger.error(f'Unexpected error during extraction, using rule-based fallback: {e}')
            return self._fallback(target)

    def _select_turns(self, turns: List[Dict[str, str]]) -> Tuple[str, List[str]]:
        user_turns = []
        for turn in turns or []:
            if not isinstance(turn, dict):
                continue
            content = str(turn.get('content') or '').strip()
            if content and turn.get('role', 'user') == 'user':
                user_turns.append(content)

        user_turns = user_turns[-max(1, self.config.context_turns):]
        if not user_turns:
            return '', []
        return user_turns[-1], user_turns[:-1][-PROMPT_CONTEXT_TURNS:]

    def _build_prompts(self, text: str, context: List[str]) -> Tuple[str, str]:
        system_prompt = SYSTEM_PROMPT.format(categories=', '.join(self.registry.suggestions()))
        user_prompt = ''
        if context:
            history = '\n'.join(f'- {turn[:500]}' for turn in context)
            user_prompt += f'Earlier messages (context only, do not extract from them):\n{history}\n\n'
        user_prompt += f'Message to analyze:\n{text}'
        return system_prompt, user_prompt

    def _extract_chunk(self, text: str, context: List[str]) -> ExtractionResult:
        if self.llm is None:
            return self._fallback(text)

        system_prompt, user_prompt = self._build_prompts(text, context)
        try:
            response = self.llm.complete(system_prompt=system_prompt, user_prompt=user_prompt, temperature=0.0)
        except BedrockLLMError as e:
            logger.warning(f'LLM extraction failed, using rule-based fallback: {e}')
            return self._fallback(text)

        parsed, strategy = repair_json(response)
        if parsed is None:
            logger.warning('LLM response could not be parsed, using rule-based fallback')
            return self._fallback(text)
        if strategy != 'direct':
            logger.info(f'LLM response recovered with strategy: {strategy}')

        return self._validate(parsed, text, STRATEGY_METHODS[strategy])

    def _validate(self, parsed: dict, source_text: str, method: str) -> ExtractionResult:
        raw_memories = parsed.get('memories')
        if not isinstance(raw_memories, list):
            raw_memories = []

        excerpt = source_text[:self.config.excerpt_length]
        memories = []
        for item in raw_memories:
            if not isinstance(item, dict):
                continue
            content = str(item.get('content') or '').strip()
            if not content:
                continue
            category = self.registry.register(item.get('category') or 'other')
            memories.append(ExtractedMemory(content=content,
                                            category=category,
                                            tags=normalize_tags(item.get('tags'), default=[category]),
                                            importance=clamp_importance(item.get('importance')),
                                            source_excerpt=excerpt))

        confidence = clamp_confidence(parsed.get('confidence'), 0.8 if memories else 0.3)
        reasoning = str(parsed.get('reasoning') or 'Analysis complete')
        return ExtractionResult(memories=deduplicate_memories(memories), reasoning=reasoning, confidence=confidence, method=method)

    def _fallback(self, text: str) -> ExtractionResult:
        if not self.config.rule_fallback:
            return ExtractionResult(memories=[], reasoning='Extraction unavailable', confidence=0.0, method='rule_based')
        return rule_based_extract(text, self.config.excerpt_length)

    def _merge(self, results: List[ExtractionResult]) -> ExtractionResult:
        if len(results) == 1:
            return results[0]

        successful = [r for r in results if r.method != 'rule_based'] or results
        memories = deduplicate_memories([m for r in results for m in r.memories])
        method = max((r.method for r in results), key=lambda name: METHOD_RANK.get(name, 0))
        reasoning = '; '.join(dict.fromkeys(r.reasoning for r in results if r.reasoning))
        return ExtractionResult(memories=memories,
                                reasoning=f'{len(results)} chunks: {reasoning}',
                                confidence=round(mean(r.confidence for r in successful), 4),
                                method=method)
