"""Tests for the memory extractor, its rule-based fallback and helpers."""
import pytest

from chatmem.models.core import ExtractedMemory
from chatmem.services.category_registry import CategoryRegistry
from chatmem.services.extraction import (MemoryExtractor, deduplicate_memories, is_similar, rule_based_extract,
                                         split_into_chunks)
from chatmem.utils.bedrock_llm import BedrockLLMError
from chatmem.utils.config import ExtractionConfig
from fakes import FakeLLM, extraction_response


def make_extractor(llm, **config_overrides):
    return MemoryExtractor(llm, CategoryRegistry(), ExtractionConfig(**config_overrides))


def user(content):
    return {'role': 'user', 'content': content}


class TestChunking:

    def test_short_text_is_one_chunk(self):
        assert split_into_chunks('hello world', 100) == ['hello world']

    def test_paragraphs_are_packed_within_limit(self):
        text = '\n\n'.join(['a' * 30, 'b' * 30, 'c' * 30])

        chunks = split_into_chunks(text, 70)

        assert chunks == ['a' * 30 + '\n' + 'b' * 30, 'c' * 30]

    def test_long_paragraph_splits_on_sentences(self):
        sentence = 'I work at Acme as an engineer. '
        text = sentence * 10

        chunks = split_into_chunks(text, 100)

        assert len(chunks) > 1
        assert all(len(chunk) <= 100 for chunk in chunks)
        assert ''.join(chunks).replace('\n', '').replace(' ', '') == text.replace(' ', '')

    def test_unbreakable_run_is_hard_cut(self):
        chunks = split_into_chunks('x' * 250, 100)

        assert [len(chunk) for chunk in chunks] == [100, 100, 50]


class TestDeduplication:

    def test_similar_content_same_category(self):
        a = ExtractedMemory(content='User lives in Seattle', category='personal_info', tags=['a'], importance=5)
        b = ExtractedMemory(content='user lives in seattle.', category='personal_info', tags=['b'], importance=8)

        unique = deduplicate_memories([a, b])

        assert len(unique) == 1
        assert unique[0].importance == 8
        assert unique[0].tags == ['a', 'b']

    def test_different_category_is_not_similar(self):
        a = ExtractedMemory(content='User lives in Seattle', category='personal_info', tags=[], importance=5)
        b = ExtractedMemory(content='User lives in Seattle', category='lifestyle', tags=[], importance=5)

        assert not is_similar(a, b)

    def test_containment_needs_close_length(self):
        short = ExtractedMemory(content='User likes tea', category='preferences', tags=[], importance=5)
        close = ExtractedMemory(content='User likes tea a lot', category='preferences', tags=[], importance=5)
        far = ExtractedMemory(content='User likes tea and also enjoys long walks in the park', category='preferences', tags=[],
                              importance=5)

        assert is_similar(short, close)
        assert not is_similar(short, far)


class TestRuleBasedExtraction:

    def test_location_and_work_families(self):
        result = rule_based_extract('I live in Seattle and I work at Amazon as an engineer.')

        categories = sorted(m.category for m in result.memories)
        assert categories == ['personal_info', 'work_context']
        assert result.method == 'rule_based'
        assert result.confidence == 0.4

    def test_chinese_family(self):
        result = rule_based_extract('我住在北京。我喜欢喝茶。')

        assert {m.content for m in result.memories} == {'我住在北京。', '我喜欢喝茶。'}

    def test_nothing_matches(self):
        result = rule_based_extract('The weather is nice today.')

        assert result.memories == []
        assert result.confidence == 0.2

    def test_excerpt_is_truncated(self):
        text = 'I live in Seattle. ' + 'x' * 500

        result = rule_based_extract(text, excerpt_length=50)

        assert result.memories[0].source_excerpt == text[:50]


class TestMemoryExtractor:

    def test_llm_extraction_is_normalized(self):
        llm = FakeLLM([
            extraction_response([{
                'content': 'User works at Acme',
                'category': 'Work Context',
                'importance': 15,
                'tags': 'job, acme'
            }, {
                'content': 'User has a dog named Rex',
                'category': 'pets',
                'importance': 'high'
            }],
                                confidence=0.85)
        ])

        result = make_extractor(llm).extract([user('I work at Acme and have a dog named Rex')])

        assert result.method == 'llm'
        assert result.confidence == 0.85
        first, second = result.memories
        assert (first.category, first.importance, first.tags) == ('work_context', 10, ['job', 'acme'])
        assert (second.category, second.importance, second.tags) == ('pets', 5, ['pets'])
        assert llm.calls[0]['temperature'] == 0.0

    def test_new_category_is_registered(self):
        registry = CategoryRegistry()
        llm = FakeLLM([extraction_response([{'content': 'User cooks ramen', 'category': 'Cooking Food'}])])

        MemoryExtractor(llm, registry, ExtractionConfig()).extract([user('I love cooking ramen at home')])

        assert registry.contains('cooking_food')
        assert not registry.is_core('cooking_food')

    def test_missing_confidence_defaults(self):
        llm = FakeLLM(['{"memories": [{"content": "User likes tea"}]}', '{"memories": []}'])
        extractor = make_extractor(llm)

        assert extractor.extract([user('I like tea very much')]).confidence == 0.8
        assert extractor.extract([user('Nothing here to keep')]).confidence == 0.3

    def test_truncated_response_is_repaired(self):
        llm = FakeLLM(['{"reasoning": "x", "confidence": 0.9, "memories": [{"content": "User lives in Seattle"}, {"content": "Us'])

        result = make_extractor(llm).extract([user('I live in Seattle with my dog')])

        assert result.method == 'repaired'
        assert [m.content for m in result.memories] == ['User lives in Seattle']

    def test_llm_failure_falls_back_to_rules(self):
        llm = FakeLLM(default=BedrockLLMError('throttled'))

        result = make_extractor(llm).extract([user('I live in Seattle.')])

        assert result.method == 'rule_based'
        assert [m.category for m in result.memories] == ['personal_info']

    def test_unparseable_response_falls_back_to_rules(self):
        llm = FakeLLM(default='Sorry, I cannot do that.')

        result = make_extractor(llm).extract([user('My wife and I got married last year.')])

        assert result.method == 'rule_based'
        assert result.memories[0].category == 'relationships'

    def test_fallback_disabled(self):
        llm = FakeLLM(default=BedrockLLMError('throttled'))

        result = make_extractor(llm, rule_fallback=False).extract([user('I live in Seattle.')])

        assert result.memories == []
        assert result.confidence == 0.0

    def test_only_user_turns_are_analyzed(self):
        llm = FakeLLM()
        turns = [user('I moved to Berlin last month'), {'role': 'assistant', 'content': 'Nice! How is it?'}, user('I love it here')]

        make_extractor(llm).extract(turns)

        prompt = llm.calls[0]['user_prompt']
        assert 'Message to analyze:\nI love it here' in prompt
        assert '- I moved to Berlin last month' in prompt
        assert 'How is it?' not in prompt

    def test_no_user_content_skips_llm(self):
        llm = FakeLLM()

        result = make_extractor(llm).extract([{'role': 'assistant', 'content': 'Hello!'}])

        assert result.memories == []
        assert result.confidence == 0.0
        assert llm.calls == []

    def test_long_input_is_chunked_and_merged(self):
        llm = FakeLLM([
            extraction_response([{'content': 'User lives in Seattle', 'category': 'personal_info'}], confidence=0.9),
            extraction_response([{'content': 'User works at Acme', 'category': 'work_context'}], confidence=0.7),
        ])
        text = 'I live in Seattle near the lake.\n\nI work at Acme on the data team.'

        result = make_extractor(llm, max_content_length=40).extract([user(text)])

        assert len(llm.calls) == 2
        assert [m.content for m in result.memories] == ['User lives in Seattle', 'User works at Acme']
        assert result.confidence == pytest.approx(0.8)
        assert result.method == 'llm'

    def test_without_llm_uses_rules(self):
        result = make_extractor(None).extract([user('I live in Seattle.')])

        assert result.method == 'rule_based'
