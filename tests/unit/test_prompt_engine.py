"""
Unit tests for the Jinja2 prompt engine.
"""

import pytest

from smsledger.core.prompt_engine import (
    COMPACT_SAMPLE_LEN,
    REPAIR_PREVIOUS_LEN,
    PromptEngine,
)

KB = "[KB]02/05 14:30 스타벅스 11,940원 승인"


class TestPromptEngine:
    def setup_method(self):
        self.engine = PromptEngine()

    def test_single_extraction(self):
        prompt = self.engine.render_single_extraction(KB, 1707111000000)
        assert "isPayment" in prompt
        assert "(SMS 수신 날짜: 2024-02-0" in prompt
        assert prompt.rstrip().endswith(KB)

    def test_single_extraction_without_date(self):
        assert "SMS 수신 날짜" not in self.engine.render_single_extraction(KB)

    def test_categories_listed(self):
        assert "카페" in self.engine.instruction()

    def test_batch_numbering(self):
        prompt = self.engine.render_batch_extraction([KB, "second"], context="[참조 정보]")
        assert "다음 2개 SMS" in prompt
        assert f"1번: {KB}" in prompt
        assert "2번: second" in prompt
        assert '"no"' in prompt
        assert "[참조 정보]" in prompt

    def test_regex_prompts(self):
        full = self.engine.render_regex([KB, "two"], [1707111000000, 0])
        assert "1) 2024-02-0" in full
        assert "2) two" in full

        compact = self.engine.render_regex_compact(["x" * 500])
        assert "x" * COMPACT_SAMPLE_LEN in compact
        assert "x" * (COMPACT_SAMPLE_LEN + 1) not in compact

    def test_ultra_compact_uses_shortest(self):
        prompt = self.engine.render_regex_ultra_compact(["a long sample body", "short"])
        assert prompt.endswith("샘플: short")

    def test_repair_carries_reason_and_previous(self):
        previous = "{\n" + "y" * 1000
        prompt = self.engine.render_regex_repair([KB], [0], previous, "isPayment_false")
        assert "실패 이유: isPayment_false" in prompt
        assert "이전 응답: { y" in prompt
        assert "y" * (REPAIR_PREVIOUS_LEN - 2) in prompt
        assert "y" * (REPAIR_PREVIOUS_LEN - 1) not in prompt

    def test_exception_context(self):
        context = self.engine.render_exception_context(
            "15881688", [(8, KB), (2, "[KB] 승인취소 11,940원")], main_card="KB국민"
        )
        assert "발신번호 15881688 총 10건" in context
        assert "서브그룹1 (메인): 8건(80%)" in context
        assert "서브그룹2: 2건(20%)" in context
        assert "메인 케이스 카드: KB국민" in context
        assert context.endswith("[분석 대상 SMS]")

    def test_unknown_template(self):
        with pytest.raises(ValueError, match="Template not found"):
            self.engine.render("nope")

    def test_custom_template_override(self, tmp_path):
        (tmp_path / "extract_single.j2").write_text("CUSTOM {{ body }}", encoding="utf-8")
        (tmp_path / "ignored.md").write_text("x", encoding="utf-8")
        engine = PromptEngine(templates_dir=str(tmp_path))
        assert engine.render_single_extraction("hello") == "CUSTOM hello"
        assert "regex_full" not in engine._custom_templates

    def test_broken_template_is_value_error(self, tmp_path):
        (tmp_path / "regex_full.j2").write_text("{% for %}", encoding="utf-8")
        engine = PromptEngine(templates_dir=str(tmp_path))
        with pytest.raises(ValueError, match="Failed to render"):
            engine.render_regex([KB])
