"""
Read-only pool of regex rules synced from a remote rule database.

Rules live under `sms_regex_rules/v1/{sender}/{ruleId}` and are fetched as
one JSON document. The pool caches the parsed map for a short TTL and
tolerates staleness; a failed fetch yields an empty map, never an error, and
is not retried before a short failure TTL elapses.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import requests

from .clusterer import normalize_address
from .models import RegexTriple, RemoteRule

logger = logging.getLogger(__name__)

RULES_PATH = "sms_regex_rules/v1"
DEFAULT_TTL_SECONDS = 600
DEFAULT_FAILURE_TTL_SECONDS = 60
DEFAULT_MIN_SIMILARITY = 0.94


class RemoteRulePool(ABC):
    """Source of sender-keyed regex rules."""

    @abstractmethod
    def load_rules(self) -> Dict[str, List[RemoteRule]]:
        """Map of normalized sender -> enabled rules."""
        pass

    def get_rules_for_sender(self, sender_address: str) -> List[RemoteRule]:
        return self.load_rules().get(normalize_address(sender_address), [])

    def invalidate_cache(self) -> None:
        pass


class EmptyRulePool(RemoteRulePool):
    """Used when no remote rule URL is configured."""

    def load_rules(self) -> Dict[str, List[RemoteRule]]:
        return {}


def parse_rule(sender: str, rule_id: str, data: Any, default_min_similarity: float) -> Optional[RemoteRule]:
    """
    One rule from its JSON node. Rules missing an embedding or the required
    amount/store regexes are dropped.
    """
    if not isinstance(data, dict):
        return None

    embedding = data.get("embedding")
    if not isinstance(embedding, list) or not embedding:
        return None
    regex = RegexTriple.from_dict(data)
    if not regex.is_usable():
        return None

    try:
        vector = [float(v) for v in embedding]
        min_similarity = float(data.get("minSimilarity", default_min_similarity))
        updated_at = int(data.get("updatedAt", 0))
    except (TypeError, ValueError):
        return None

    return RemoteRule(
        rule_id=str(rule_id),
        sender_address=sender,
        vector=vector,
        regex=regex,
        min_similarity=min_similarity,
        enabled=bool(data.get("enabled", True)),
        updated_at=updated_at,
    )


class HttpRulePool(RemoteRulePool):
    """
    Remote rules over a Firebase-style REST endpoint.

    GET {base_url}/sms_regex_rules/v1.json returns
    {sender: {ruleId: {embedding, amountRegex, storeRegex, cardRegex,
    minSimilarity, enabled, updatedAt}}}.
    """

    def __init__(
        self,
        base_url: str,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        timeout: float = 10,
        default_min_similarity: float = DEFAULT_MIN_SIMILARITY,
        failure_ttl_seconds: float = DEFAULT_FAILURE_TTL_SECONDS,
    ):
        self.base_url = base_url.rstrip("/")
        self.ttl_seconds = ttl_seconds
        self.failure_ttl_seconds = failure_ttl_seconds
        self.timeout = timeout
        self.default_min_similarity = default_min_similarity
        self._cache: Dict[str, List[RemoteRule]] = {}
        self._cached_at: Optional[float] = None
        self._failed = False
        self._lock = threading.Lock()

    @property
    def url(self) -> str:
        return f"{self.base_url}/{RULES_PATH}.json"

    def _fetch(self) -> Optional[Dict[str, List[RemoteRule]]]:
        """Parsed rule map, or None when the fetch itself failed."""
        try:
            response = requests.get(self.url, timeout=self.timeout)
            response.raise_for_status()
            document = response.json()
        except requests.exceptions.Timeout:
            logger.warning("Remote rule fetch timed out")
            return None
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.warning(f"Remote rule fetch failed: {e}")
            return None

        rules: Dict[str, List[RemoteRule]] = {}
        if not isinstance(document, dict):
            return rules

        for sender, nodes in document.items():
            if not isinstance(nodes, dict):
                continue
            key = normalize_address(sender)
            for rule_id, node in nodes.items():
                rule = parse_rule(key, rule_id, node, self.default_min_similarity)
                if rule is not None and rule.enabled:
                    rules.setdefault(key, []).append(rule)

        logger.info(
            f"Loaded {sum(len(v) for v in rules.values())} remote rules for {len(rules)} senders"
        )
        return rules

    def _fresh(self) -> bool:
        if self._cached_at is None:
            return False
        ttl = self.failure_ttl_seconds if self._failed else self.ttl_seconds
        return time.time() - self._cached_at < ttl

    def load_rules(self) -> Dict[str, List[RemoteRule]]:
        with self._lock:
            if self._fresh():
                return self._cache

        rules = self._fetch()
        with self._lock:
            self._failed = rules is None
            self._cache = rules or {}
            self._cached_at = time.time()
            return self._cache

    def invalidate_cache(self) -> None:
        with self._lock:
            self._cache = {}
            self._cached_at = None
            self._failed = False


def create_rule_pool(config: Optional[Dict] = None, default_min_similarity: float = DEFAULT_MIN_SIMILARITY) -> RemoteRulePool:
    config = config or {}
    url = config.get("url")
    if not url:
        return EmptyRulePool()
    return HttpRulePool(
        url,
        ttl_seconds=config.get("ttl_seconds", DEFAULT_TTL_SECONDS),
        timeout=config.get("timeout", 10),
        default_min_similarity=default_min_similarity,
        failure_ttl_seconds=config.get("failure_ttl_seconds", DEFAULT_FAILURE_TTL_SECONDS),
    )
