"""
Keyword extraction and related-term expansion for English and Chinese text.
"""

import re
from typing import Dict, Iterable, List, Optional

from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.config import NLPConfig
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

MAX_KEYWORDS = 15
MAX_CJK_SEGMENTS = 5

_WORD_PATTERN = re.compile(r'[a-z0-9][a-z0-9\'_-]*')
_CJK_RUN_PATTERN = re.compile(r'[一-龥]+')
_LIST_SEPARATORS = re.compile(r'[,，、;；\n]+')

STOP_WORDS = frozenset({
    'a', 'an', 'the', 'i', "i'm", 'me', 'my', 'mine', 'myself', 'you', 'your', 'yours', 'we', 'our', 'us', 'he', 'him',
    'his', 'she', 'her', 'it', 'its', 'they', 'them', 'their', 'is', 'am', 'are', 'was', 'were', 'be', 'been', 'being',
    'do', 'does', 'did', 'what', "what's", 'where', 'when', 'who', 'whom', 'which', 'why', 'how', 'to', 'of', 'in', 'on',
    'at', 'for', 'with', 'and', 'or', 'but', 'so', 'that', 'this', 'these', 'those', 'there', 'here', 'have', 'has',
    'had', 'can', 'could', 'would', 'should', 'will', 'shall', 'may', 'might', 'must', 'about', 'from', 'by', 'as',
    'if', 'then', 'than', 'too', 'very', 'just', 'also', 'not', 'no', 'yes', 'please', 'tell', 'any', 'some', 'all',
    'into', 'over', 'again', 'ok', 'okay', 'really', 'now', 'remember', 'know',
})

CJK_STOP_SEGMENTS = frozenset({'应该', '怎样', '有效', '感觉', '同时', '又能', '什么', '怎么', '是不是', '可以', '一下'})

# Trigger word -> expansions appended to the keywords
KEYWORD_FAMILIES: Dict[str, List[str]] = {
    '我': ['自己', '个人'],
    '自己': ['我', '个人'],
    '介绍': ['展示', '说明'],
    '履历': ['简历', '经历'],
    '员工': ['同事', '工作'],
    '电脑': ['MacBook', '设备'],
    '宠物': ['狗', '猫'],
    '项目': ['工作', '经验'],
    '名字': ['姓名', '名称'],
    'live': ['location', 'city'],
    'job': ['work', 'company'],
    'work': ['job', 'company'],
    'computer': ['laptop', 'device'],
    'pet': ['dog', 'cat'],
    'name': ['called', 'named'],
}

RELATED_TERMS: Dict[str, List[str]] = {
    'live': ['lives', 'living', 'city', 'location', 'home', 'address', 'reside'],
    'location': ['city', 'live', 'address', 'home'],
    'city': ['live', 'location', 'town'],
    'home': ['live', 'house', 'address'],
    'work': ['job', 'company', 'career', 'employer', 'office', 'role'],
    'job': ['work', 'company', 'career', 'role', 'position'],
    'company': ['work', 'employer', 'job', 'business'],
    'career': ['job', 'work', 'experience'],
    'computer': ['laptop', 'device', 'macbook', 'pc'],
    'laptop': ['computer', 'macbook', 'device'],
    'device': ['computer', 'phone', 'laptop'],
    'phone': ['mobile', 'device', 'contact'],
    'pet': ['dog', 'cat', 'animal'],
    'dog': ['pet', 'puppy', 'animal'],
    'cat': ['pet', 'kitten', 'animal'],
    'family': ['wife', 'husband', 'children', 'kids', 'parents', 'married'],
    'wife': ['married', 'spouse', 'family', 'partner'],
    'husband': ['married', 'spouse', 'family', 'partner'],
    'married': ['wife', 'husband', 'spouse', 'family'],
    'email': ['contact', 'address', 'mail'],
    'contact': ['email', 'phone', 'address'],
    'health': ['exercise', 'fitness', 'weight', 'medical'],
    'exercise': ['fitness', 'sport', 'health', 'workout'],
    'school': ['university', 'college', 'education', 'degree'],
    'study': ['school', 'learn', 'education', 'course'],
    'university': ['college', 'degree', 'school', 'education'],
    'name': ['called', 'named', 'identity'],
    'like': ['enjoy', 'love', 'prefer', 'favorite'],
    'favorite': ['like', 'prefer', 'love'],
    'project': ['work', 'startup', 'product'],
    '我': ['自己', '个人', '本人'],
    '自己': ['我', '个人'],
    '住': ['居住', '城市', '地址', '家'],
    '工作': ['职业', '公司', '职位', '项目'],
    '公司': ['工作', '企业', '单位'],
    '项目': ['工作', '经验', '经历'],
    '电脑': ['MacBook', '设备', '配置'],
    '宠物': ['狗', '猫', '动物'],
    '家庭': ['妻子', '老婆', '孩子', '结婚'],
    '名字': ['姓名', '称呼'],
    '履历': ['简历', '经历', '工作经验'],
    '健康': ['运动', '锻炼', '身高', '体重'],
    '学校': ['大学', '学历', '专业'],
}

KEYWORD_SYSTEM_PROMPT = """You extract search keywords from text.
Return only a comma-separated list of at most 10 short keywords (nouns, names, places, topics).
No explanations, no numbering, no quotes."""

RELATED_TERMS_SYSTEM_PROMPT = """You expand search keywords with closely related terms (synonyms, broader and narrower terms).
Return only a comma-separated list of at most 10 related terms. No explanations, no numbering, no quotes."""


def _unique(items: Iterable[str], limit: Optional[int] = None, exclude: Iterable[str] = ()) -> List[str]:
    excluded = {item.lower() for item in exclude}
    result = []
    seen = set()
    for item in items:
        value = item.strip()
        key = value.lower()
        if not value or key in seen or key in excluded:
            continue
        seen.add(key)
        result.append(value)
        if limit is not None and len(result) >= limit:
            break
    return result


def _cjk_segments(text: str) -> List[str]:
    segments = []
    for run in _CJK_RUN_PATTERN.findall(text):
        if len(run) < 2:
            continue
        if len(run) <= 3:
            segments.append(run)
            continue
        segments.extend(run[i:i + 2] for i in range(0, len(run) - 1, 2))
    return [segment for segment in segments if segment not in CJK_STOP_SEGMENTS]


def extract_keywords_rule_based(text: str) -> List[str]:
    """Deterministic keyword extraction used when no LLM is available.

    Args:
        text: Input text

    Returns:
        De-duplicated keywords in order of appearance, at most 15
    """
    if not text:
        return []

    lowered = text.lower()
    keywords = []

    for word in _WORD_PATTERN.findall(lowered):
        word = word.strip("'-_")
        if len(word) > 1 and word not in STOP_WORDS:
            keywords.append(word)

    for trigger, expansions in KEYWORD_FAMILIES.items():
        if trigger.isascii():
            if re.search(rf'\b{re.escape(trigger)}\b', lowered):
                keywords.extend(expansions)
        elif trigger in text:
            keywords.append(trigger)
            keywords.extend(expansions)

    keywords.extend(_cjk_segments(text)[:MAX_CJK_SEGMENTS])
    return _unique(keywords, MAX_KEYWORDS)


def _variants(word: str) -> List[str]:
    if not word.isascii() or len(word) < 3:
        return []
    if word.endswith('s') and len(word) > 3:
        return [word[:-1]]
    return [word + 's']


def generate_related_terms_rule_based(keywords: List[str]) -> List[str]:
    """Expand keywords with the fixed related-term map and plural variants."""
    terms = []
    for keyword in keywords:
        key = keyword.lower()
        terms.extend(RELATED_TERMS.get(key, []))
        terms.extend(_variants(key))
    return _unique(terms, exclude=keywords)


class NLPService:
    """Keyword extraction with an optional LLM backend and a rule-based fallback."""

    def __init__(self, llm: Optional[BedrockLLM] = None, config: Optional[NLPConfig] = None):
        self.llm = llm
        self.use_llm = bool(llm is not None and config is not None and config.use_llm)

    def extract_keywords(self, text: str) -> List[str]:
        if not text or not text.strip():
            return []
        if self.use_llm:
            keywords = self._ask_llm(KEYWORD_SYSTEM_PROMPT, text)
            if keywords:
                return _unique((k.lower() if k.isascii() else k for k in keywords), MAX_KEYWORDS)
        return extract_keywords_rule_based(text)

    def generate_related_terms(self, keywords: List[str]) -> List[str]:
        if not keywords:
            return []
        if self.use_llm:
            terms = self._ask_llm(RELATED_TERMS_SYSTEM_PROMPT, ', '.join(keywords))
            if terms:
                return _unique(terms, exclude=keywords)
        return generate_related_terms_rule_based(keywords)

    def _ask_llm(self, system_prompt: str, text: str) -> List[str]:
        try:
            response = self.llm.complete(system_prompt=system_prompt, user_prompt=text, max_tokens=200, temperature=0.0)
        except BedrockLLMError as e:
            logger.warning(f'LLM keyword call failed, using rule-based fallback: {e}')
            return []
        return [item.strip(' "\'.') for item in _LIST_SEPARATORS.split(response) if item.strip(' "\'.')]
