"""
Prompt engine for generative extraction and regex synthesis.

Prompts are Jinja2 templates. Built-in templates can be overridden by files
in a templates directory (`<name>.j2`, `<name>.jinja2` or `<name>.txt`).
"""

import logging
import os
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from jinja2 import BaseLoader, Environment, TemplateError

from .categories import VALID_CATEGORIES
from .template_engine import compact_sample

logger = logging.getLogger(__name__)

# Sample lengths for the three regex prompt sizes
FULL_SAMPLE_LEN = 180
COMPACT_SAMPLE_LEN = 140
ULTRA_COMPACT_SAMPLE_LEN = 120
REPAIR_PREVIOUS_LEN = 240
EXCEPTION_SAMPLE_LEN = 80


class PromptEngine:
    """
    Jinja2-backed prompt builder.

    Usage:
        engine = get_prompt_engine()
        prompt = engine.render_single_extraction(body, timestamp_ms)
    """

    EXTRACTION_INSTRUCTION = """너는 한국 카드/은행 결제 문자에서 결제 정보를 추출하는 도우미다.
반드시 JSON만 반환한다. 형식:
{"isPayment": true, "amount": 11940, "storeName": "가맹점명", "cardName": "카드사", "dateTime": "YYYY-MM-DD HH:mm", "category": "카테고리"}
규칙:
1. 실제 결제(승인/출금/사용)가 아니면 isPayment는 false
2. amount는 원 단위 정수, 쉼표 없이
3. 가맹점을 알 수 없으면 storeName은 "결제"
4. category는 다음 중 하나: {{ categories|join(", ") }}"""

    DEFAULT_TEMPLATES = {
        "extract_single": """{{ instruction }}

다음 SMS에서 결제 정보를 추출해주세요:{% if date %}
(SMS 수신 날짜: {{ date }}){% endif %}{% if context %}
{{ context }}{% endif %}
{{ body }}""",

        "extract_batch": """{{ instruction }}
여러 SMS가 주어지면 JSON 배열로 반환하고, 각 객체에 SMS 번호를 "no" 필드(1부터 시작)로 포함한다.

다음 {{ items|length }}개 SMS에서 각각 결제 정보를 추출해주세요:{% if context %}
{{ context }}{% endif %}

{% for item in items %}{{ loop.index }}번{% if item.date %} (수신: {{ item.date }}){% endif %}: {{ item.body }}{% if not loop.last %}

{% endif %}{% endfor %}""",

        "regex_full": """같은 형식의 결제 SMS 샘플입니다. 공통 정규식을 JSON으로만 반환하세요.
필드: isPayment, amountRegex, storeRegex, cardRegex
조건: amountRegex/storeRegex는 group1 캡처 필수.
샘플:
{% for s in samples %}{{ loop.index }}) {% if s.date %}{{ s.date }} {% endif %}{{ s.text }}{% if not loop.last %}
{% endif %}{% endfor %}""",

        "regex_compact": """결제 SMS 샘플 공통 정규식 JSON만 반환.
필드: isPayment, amountRegex, storeRegex, cardRegex
제약: amountRegex/storeRegex는 group1 필수.
샘플:
{% for s in samples %}{{ loop.index }}: {{ s.text }}{% if not loop.last %}
{% endif %}{% endfor %}""",

        "regex_ultra_compact": """JSON만:
{"isPayment":true/false,"amountRegex":"","storeRegex":"","cardRegex":""}
규칙: 결제면 amountRegex/storeRegex group1 필수.
샘플: {{ shortest }}""",

        "regex_repair": """이전 정규식 응답이 검증에 실패했습니다.
실패 이유: {{ reason }}, 이전 응답: {{ previous }}
다음 샘플 전체를 만족하도록 수정하세요.
{% for s in samples %}{{ loop.index }}) {% if s.date %}{{ s.date }} {% endif %}{{ s.text }}{% if not loop.last %}
{% endif %}{% endfor %}

반드시 JSON만 반환하세요.""",

        "exception_context": """[참조 정보]
이 SMS는 아래 발신번호의 예외 케이스입니다.
발신번호 {{ sender }} 총 {{ total }}건:
{% for g in groups %}- 서브그룹{{ loop.index }}{% if loop.first %} (메인){% endif %}: {{ g.size }}건({{ g.percent }}%) | 원본: {{ g.sample }}
{% endfor %}{% if main_card %}메인 케이스 카드: {{ main_card }}
{% endif %}
[분석 대상 SMS]""",
    }

    def __init__(self, templates_dir: Optional[str] = None):
        self.templates_dir = templates_dir
        self._env = Environment(
            loader=BaseLoader(),
            autoescape=False,
            keep_trailing_newline=False,
        )
        self._custom_templates: Dict[str, str] = {}
        if templates_dir and os.path.isdir(templates_dir):
            self._load_custom_templates(templates_dir)

    def _load_custom_templates(self, templates_dir: str) -> None:
        for filename in sorted(os.listdir(templates_dir)):
            if not filename.endswith((".jinja2", ".txt", ".j2")):
                continue
            name = os.path.splitext(filename)[0]
            path = os.path.join(templates_dir, filename)
            try:
                with open(path, "r", encoding="utf-8") as f:
                    self._custom_templates[name] = f.read()
            except OSError as e:
                logger.warning(f"Failed to load custom template {path}: {e}")
                continue
            logger.debug(f"Loaded custom template: {name}")

    def get_template(self, name: str) -> str:
        if name in self._custom_templates:
            return self._custom_templates[name]
        if name in self.DEFAULT_TEMPLATES:
            return self.DEFAULT_TEMPLATES[name]
        raise ValueError(f"Template not found: {name}")

    def render(self, name: str, **context) -> str:
        """
        Render a template.

        Raises:
            ValueError: unknown template or a template syntax/render error
        """
        try:
            return self._env.from_string(self.get_template(name)).render(**context)
        except TemplateError as e:
            raise ValueError(f"Failed to render template '{name}': {e}") from e

    @staticmethod
    def format_date(timestamp_ms: int) -> str:
        if not timestamp_ms or timestamp_ms <= 0:
            return ""
        return datetime.fromtimestamp(timestamp_ms / 1000.0).strftime("%Y-%m-%d")

    def instruction(self) -> str:
        return self._env.from_string(self.EXTRACTION_INSTRUCTION).render(categories=VALID_CATEGORIES)

    # ------------------------------------------------------------------
    # Extraction prompts
    # ------------------------------------------------------------------

    def render_single_extraction(self, body: str, timestamp_ms: int = 0, context: str = "") -> str:
        return self.render(
            "extract_single",
            instruction=self.instruction(),
            date=self.format_date(timestamp_ms),
            context=context,
            body=body,
        )

    def render_batch_extraction(
        self,
        bodies: Sequence[str],
        timestamps: Sequence[int] = (),
        context: str = "",
    ) -> str:
        items = [
            {"body": body, "date": self.format_date(timestamps[i] if i < len(timestamps) else 0)}
            for i, body in enumerate(bodies)
        ]
        return self.render(
            "extract_batch", instruction=self.instruction(), items=items, context=context
        )

    def render_exception_context(
        self,
        sender: str,
        groups: Sequence[Tuple[int, str]],
        main_card: str = "",
    ) -> str:
        """
        Reference block for a sender's exception clusters.

        Args:
            sender: Normalized sender address
            groups: (size, sample body) per cluster, main cluster first
            main_card: Card name extracted for the main cluster
        """
        total = sum(size for size, _ in groups) or 1
        rows = [
            {
                "size": size,
                "percent": round(size * 100 / total),
                "sample": compact_sample(sample, EXCEPTION_SAMPLE_LEN),
            }
            for size, sample in groups
        ]
        return self.render(
            "exception_context",
            sender=sender,
            total=sum(size for size, _ in groups),
            groups=rows,
            main_card=main_card,
        )

    # ------------------------------------------------------------------
    # Regex prompts
    # ------------------------------------------------------------------

    def _samples(self, bodies: Sequence[str], timestamps: Sequence[int], max_len: int) -> List[Dict]:
        return [
            {
                "text": compact_sample(body, max_len),
                "date": self.format_date(timestamps[i] if i < len(timestamps) else 0),
            }
            for i, body in enumerate(bodies)
        ]

    def render_regex(self, bodies: Sequence[str], timestamps: Sequence[int] = ()) -> str:
        return self.render("regex_full", samples=self._samples(bodies, timestamps, FULL_SAMPLE_LEN))

    def render_regex_compact(self, bodies: Sequence[str]) -> str:
        return self.render("regex_compact", samples=self._samples(bodies, (), COMPACT_SAMPLE_LEN))

    def render_regex_ultra_compact(self, bodies: Sequence[str]) -> str:
        compacted = [compact_sample(body, ULTRA_COMPACT_SAMPLE_LEN) for body in bodies]
        shortest = min(compacted, key=len) if compacted else ""
        return self.render("regex_ultra_compact", shortest=shortest)

    def render_regex_repair(
        self,
        bodies: Sequence[str],
        timestamps: Sequence[int],
        previous_response: str,
        reason: str,
    ) -> str:
        previous = (previous_response or "").replace("\n", " ")[:REPAIR_PREVIOUS_LEN]
        return self.render(
            "regex_repair",
            samples=self._samples(bodies, timestamps, FULL_SAMPLE_LEN),
            previous=previous,
            reason=reason,
        )


# Global prompt engine instance
_prompt_engine: Optional[PromptEngine] = None


def get_prompt_engine(templates_dir: Optional[str] = None) -> PromptEngine:
    """Get or create the global prompt engine instance."""
    global _prompt_engine
    if _prompt_engine is None:
        _prompt_engine = PromptEngine(templates_dir=templates_dir)
    return _prompt_engine
