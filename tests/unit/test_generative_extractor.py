"""
Unit tests for single and batch generative extraction.
"""

import json

import pytest

from smsledger.core.errors import LowQualityParse, QuotaExhausted, TransientProviderError
from smsledger.core.generative_extractor import (
    GenerativeExtractor,
    LlmExtraction,
    parse_batch_extraction_response,
    parse_extraction_response,
)
from smsledger.core.models import Message
from smsledger.core.prompt_engine import PromptEngine
from smsledger.core.rate_limited_caller import RateLimitedCaller

STARBUCKS = {
    "isPayment": True,
    "amount": 11940,
    "storeName": "스타벅스",
    "cardName": "KB국민",
    "dateTime": "2024-02-05 14:30",
    "category": "카페",
}


def messages(n):
    return [Message(str(i), f"[KB] 가맹점{i} {1000 * (i + 1):,}원 승인", "1588-1688", 0) for i in range(n)]


class TestParsing:
    def test_single(self):
        verdict = parse_extraction_response("결과: " + json.dumps(STARBUCKS, ensure_ascii=False))
        assert verdict.is_payment
        assert verdict.amount == 11940
        assert verdict.to_result().store == "스타벅스"

    def test_coercion(self):
        verdict = LlmExtraction.from_json(
            {"isPayment": "true", "amount": "11,940원", "storeName": None, "category": "없는카테고리"}
        )
        assert verdict.amount == 11940
        assert verdict.store == "결제"
        assert verdict.category == "기타"

    def test_not_payment_has_no_result(self):
        assert LlmExtraction(is_payment=False, amount=100).to_result() is None
        assert LlmExtraction(is_payment=True, amount=0).to_result() is None

    def test_low_quality_is_deferred(self):
        assert LlmExtraction(is_payment=True, amount=50, store="스타벅스").to_result() is None
        assert LlmExtraction(is_payment=True, amount=5000).to_result() is None
        assert LlmExtraction(is_payment=True, amount=5000, store="스타벅스").to_result(min_amount=10000) is None
        with pytest.raises(LowQualityParse):
            LlmExtraction(is_payment=True, amount=5000).check_quality()

    def test_single_without_json(self):
        assert parse_extraction_response("I cannot help with that") is None

    def test_batch_placed_by_number(self):
        text = json.dumps([{"no": 2, "isPayment": False}, {"no": 1, **STARBUCKS}])
        parsed = parse_batch_extraction_response(text, 2)
        assert parsed[0].store == "스타벅스"
        assert not parsed[1].is_payment

    def test_batch_out_of_range_numbers_ignored(self):
        text = json.dumps([{"no": 1, **STARBUCKS}, {"no": 9, **STARBUCKS}, "junk"])
        parsed = parse_batch_extraction_response(text, 2)
        assert parsed[1] is None

    def test_batch_below_half_rejected(self):
        text = json.dumps([{"no": 1, **STARBUCKS}])
        assert parse_batch_extraction_response(text, 3) is None


class TestExtractor:
    @pytest.fixture(autouse=True)
    def _setup(self, fake_generator, sleep_recorder):
        self.generator_class = fake_generator
        self.sleeps = sleep_recorder

    def make(self, responses=(), responder=None):
        self.generator = self.generator_class(responder=responder, responses=responses)
        return GenerativeExtractor(
            self.generator,
            RateLimitedCaller(sleep=self.sleeps),
            PromptEngine(),
            sleep=self.sleeps,
        )

    def test_single_call(self):
        extractor = self.make([json.dumps(STARBUCKS)])
        verdict = extractor.extract(Message("1", "[KB] 스타벅스 11,940원 승인", "", 1707111000000))
        assert verdict.card == "KB국민"
        assert "(SMS 수신 날짜: " in self.generator.prompts[0]
        assert self.generator.calls[0]["max_tokens"] == 1024

    def test_single_failure_is_none(self):
        assert self.make([QuotaExhausted("quota exceeded")]).extract(messages(1)[0]) is None

    def test_unexpected_provider_error_is_none(self):
        assert self.make([AttributeError("'list' object has no attribute 'get'")]).extract(messages(1)[0]) is None

    def test_unexpected_batch_error_falls_back_to_singles(self):
        extractor = self.make([TypeError("bad shape"), TypeError("bad shape")] + [json.dumps(STARBUCKS)] * 2)
        verdicts = extractor.extract_batch(messages(2))
        assert [v.amount for v in verdicts] == [11940, 11940]
        assert len(self.generator.prompts) == 4

    def test_batch_of_one_is_single_call(self):
        extractor = self.make([json.dumps(STARBUCKS)])
        assert extractor.extract_batch(messages(1))[0].amount == 11940
        assert "다음 SMS에서 결제 정보를" in self.generator.prompts[0]

    def test_batch(self):
        batch = json.dumps([{"no": i + 1, **STARBUCKS, "amount": 1000 * (i + 1)} for i in range(3)])
        extractor = self.make([batch])
        verdicts = extractor.extract_batch(messages(3), context="[참조 정보]")
        assert [v.amount for v in verdicts] == [1000, 2000, 3000]
        assert len(self.generator.prompts) == 1
        assert "3번: " in self.generator.prompts[0]
        assert "[참조 정보]" in self.generator.prompts[0]
        assert self.generator.calls[0]["max_tokens"] == 4096

    def test_unparseable_batch_falls_back_to_singles(self):
        def responder(prompt, json_mode):
            if "개 SMS에서" in prompt:
                return "sorry"
            return json.dumps(STARBUCKS)

        extractor = self.make(responder=responder)
        verdicts = extractor.extract_batch(messages(3))
        assert all(v.amount == 11940 for v in verdicts)
        # two batch attempts + three singles
        assert len(self.generator.prompts) == 5
        assert self.sleeps.delays == [0.05, 0.05]

    def test_rate_limited_batch_retries(self):
        batch = json.dumps([{"no": 1, **STARBUCKS}, {"no": 2, **STARBUCKS}])
        extractor = self.make([TransientProviderError("429", 429), batch])
        assert all(v is not None for v in extractor.extract_batch(messages(2)))
        assert self.sleeps.delays == [1.0]

    def test_quota_degrades_batch(self):
        extractor = self.make([QuotaExhausted("quota exceeded")])
        assert extractor.extract_batch(messages(4)) == [None] * 4
        assert len(self.generator.prompts) == 1

    def test_empty(self):
        assert self.make().extract_batch([]) == []
