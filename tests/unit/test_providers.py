"""
Unit tests for the embedding/generation providers.
"""

from unittest.mock import Mock, patch

import pytest
import requests

from smsledger.core.errors import MalformedResponse, OutputTruncated, QuotaExhausted, TransientProviderError
from smsledger.providers.base import raise_for_provider_status
from smsledger.providers.gemini_provider import GeminiProvider
from smsledger.providers.ollama_provider import OllamaProvider
from smsledger.providers.openai_provider import OpenAIProvider

# Keyring is imported in smsledger.utils.secrets, not in provider modules
KEYRING_PATCH = "smsledger.utils.secrets.keyring"


def http_response(status=200, payload=None, text="", headers=None):
    response = Mock()
    response.status_code = status
    response.text = text
    response.headers = headers or {}
    response.json.return_value = payload if payload is not None else {}
    if status >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status}")
    return response


class TestStatusMapping:
    def test_ok(self):
        raise_for_provider_status(http_response(200), "x")

    def test_rate_limited_with_retry_after(self):
        with pytest.raises(TransientProviderError) as exc:
            raise_for_provider_status(http_response(429, headers={"Retry-After": "3"}), "x")
        assert exc.value.status_code == 429
        assert exc.value.retry_after == 3.0

    def test_quota_signature(self):
        body = '{"error": {"status": "RESOURCE_EXHAUSTED", "message": "Quota exceeded for metric"}}'
        with pytest.raises(QuotaExhausted):
            raise_for_provider_status(http_response(429, text=body), "x")
        with pytest.raises(QuotaExhausted):
            raise_for_provider_status(http_response(403, text="insufficient_quota"), "x")

    def test_server_error_is_transient(self):
        with pytest.raises(TransientProviderError):
            raise_for_provider_status(http_response(503), "x")

    def test_client_error_is_http_error(self):
        with pytest.raises(requests.exceptions.HTTPError):
            raise_for_provider_status(http_response(400), "x")


class TestGeminiProvider:
    def setup_method(self):
        self.config = {"api_key": "test-key", "model": "gemini-2.0-flash"}

    @patch(KEYRING_PATCH)
    def test_init_with_explicit_key(self, mock_keyring):
        provider = GeminiProvider(self.config)
        assert provider.api_key == "test-key"
        mock_keyring.get_password.assert_not_called()

    @patch(KEYRING_PATCH)
    def test_init_with_keyring(self, mock_keyring):
        mock_keyring.get_password.return_value = "keyring-key"
        assert GeminiProvider({}).api_key == "keyring-key"
        mock_keyring.get_password.assert_called_with("smsledger", "gemini_api_key")

    @patch(KEYRING_PATCH)
    def test_init_without_key(self, mock_keyring):
        mock_keyring.get_password.return_value = None
        with pytest.raises(ValueError, match="Gemini API key not configured"):
            GeminiProvider({})

    @patch("smsledger.providers.gemini_provider.requests.post")
    def test_embed_batch(self, mock_post):
        mock_post.return_value = http_response(
            payload={"embeddings": [{"values": [0.1, 0.2]}, {}]}
        )
        vectors = GeminiProvider(self.config).embed_batch(["a", "b"])

        assert vectors == [[0.1, 0.2], None]
        body = mock_post.call_args.kwargs["json"]
        assert len(body["requests"]) == 2
        assert body["requests"][0]["model"] == "models/gemini-embedding-001"
        assert mock_post.call_args.kwargs["timeout"] == 30

    @patch("smsledger.providers.gemini_provider.requests.post")
    def test_embed_empty_makes_no_request(self, mock_post):
        assert GeminiProvider(self.config).embed_batch([]) == []
        mock_post.assert_not_called()

    @patch("smsledger.providers.gemini_provider.requests.post")
    def test_embed_rate_limited(self, mock_post):
        mock_post.return_value = http_response(429, text="Too Many Requests")
        with pytest.raises(TransientProviderError):
            GeminiProvider(self.config).embed_batch(["a"])

    @patch("smsledger.providers.gemini_provider.requests.post")
    def test_generate(self, mock_post):
        mock_post.return_value = http_response(payload={
            "candidates": [{"content": {"parts": [{"text": '{"isPayment": '}, {"text": "false}"}]},
                            "finishReason": "STOP"}],
        })
        text = GeminiProvider(self.config).generate("prompt", json_mode=True, max_tokens=50)

        assert text == '{"isPayment": false}'
        config = mock_post.call_args.kwargs["json"]["generationConfig"]
        assert config["responseMimeType"] == "application/json"
        assert config["maxOutputTokens"] == 50

    @patch("smsledger.providers.gemini_provider.requests.post")
    def test_generate_max_tokens_is_truncation(self, mock_post):
        mock_post.return_value = http_response(payload={
            "candidates": [{"content": {"parts": [{"text": '{"amountRe'}]}, "finishReason": "MAX_TOKENS"}],
        })
        with pytest.raises(OutputTruncated):
            GeminiProvider(self.config).generate("prompt")

    @patch("smsledger.providers.gemini_provider.requests.post")
    def test_generate_blocked(self, mock_post):
        mock_post.return_value = http_response(payload={"promptFeedback": {"blockReason": "SAFETY"}})
        with pytest.raises(MalformedResponse, match="SAFETY"):
            GeminiProvider(self.config).generate("prompt")

    @patch("smsledger.providers.gemini_provider.requests.get")
    def test_health_check(self, mock_get):
        provider = GeminiProvider(self.config)
        mock_get.return_value = http_response(200)
        assert provider.health_check() is True
        mock_get.return_value = http_response(403)
        assert provider.health_check() is False
        mock_get.side_effect = requests.exceptions.Timeout()
        assert provider.health_check() is False

    def test_identity(self):
        provider = GeminiProvider(self.config)
        assert provider.get_name() == "gemini"
        assert provider.is_local is False


class TestOpenAIProvider:
    def setup_method(self):
        self.config = {"api_key": "sk-test"}

    @patch("smsledger.providers.openai_provider.requests.post")
    def test_embed_batch_places_by_index(self, mock_post):
        mock_post.return_value = http_response(payload={"data": [
            {"index": 1, "embedding": [0.5]},
            {"index": 0, "embedding": [0.25]},
        ]})
        assert OpenAIProvider(self.config).embed_batch(["a", "b"]) == [[0.25], [0.5]]

    @patch("smsledger.providers.openai_provider.requests.post")
    def test_generate_json_mode(self, mock_post):
        mock_post.return_value = http_response(payload={
            "choices": [{"message": {"content": '{"isPayment": true}'}, "finish_reason": "stop"}]
        })
        assert OpenAIProvider(self.config).generate("p", json_mode=True) == '{"isPayment": true}'
        payload = mock_post.call_args.kwargs["json"]
        assert payload["response_format"] == {"type": "json_object"}
        assert mock_post.call_args.kwargs["headers"]["Authorization"] == "Bearer sk-test"

    @patch("smsledger.providers.openai_provider.requests.post")
    def test_generate_length_is_truncation(self, mock_post):
        mock_post.return_value = http_response(payload={
            "choices": [{"message": {"content": "{"}, "finish_reason": "length"}]
        })
        with pytest.raises(OutputTruncated):
            OpenAIProvider(self.config).generate("p")

    @patch("smsledger.providers.openai_provider.requests.post")
    def test_generate_unexpected_shape(self, mock_post):
        mock_post.return_value = http_response(payload={"error": "?"})
        with pytest.raises(MalformedResponse):
            OpenAIProvider(self.config).generate("p")

    @patch("smsledger.providers.openai_provider.requests.post")
    def test_insufficient_quota(self, mock_post):
        mock_post.return_value = http_response(429, text='{"error": {"code": "insufficient_quota"}}')
        with pytest.raises(QuotaExhausted):
            OpenAIProvider(self.config).generate("p")

    @patch(KEYRING_PATCH)
    def test_missing_key(self, mock_keyring):
        mock_keyring.get_password.return_value = None
        with pytest.raises(ValueError):
            OpenAIProvider({})


class TestOllamaProvider:
    def setup_method(self):
        self.provider = OllamaProvider({"model": "llama3"})

    def test_defaults(self):
        assert self.provider.base_url == "http://localhost:11434"
        assert self.provider.is_local is True
        assert self.provider.get_name() == "ollama"

    @patch("smsledger.providers.ollama_provider.requests.post")
    def test_embed_batch(self, mock_post):
        mock_post.return_value = http_response(payload={"embeddings": [[1, 2], []]})
        assert self.provider.embed_batch(["a", "b"]) == [[1.0, 2.0], None]

    @patch("smsledger.providers.ollama_provider.requests.post")
    def test_generate(self, mock_post):
        mock_post.return_value = http_response(payload={"response": "{}", "done": True})
        assert self.provider.generate("p", json_mode=True) == "{}"
        payload = mock_post.call_args.kwargs["json"]
        assert payload["format"] == "json"
        assert payload["stream"] is False

    @patch("smsledger.providers.ollama_provider.requests.post")
    def test_generate_length(self, mock_post):
        mock_post.return_value = http_response(payload={"response": "{", "done_reason": "length"})
        with pytest.raises(OutputTruncated):
            self.provider.generate("p")

    @patch("smsledger.providers.ollama_provider.requests.post")
    def test_generate_empty(self, mock_post):
        mock_post.return_value = http_response(payload={"response": "  "})
        with pytest.raises(MalformedResponse):
            self.provider.generate("p")

    @patch("smsledger.providers.ollama_provider.requests.get")
    def test_health_check_connection_refused(self, mock_get):
        mock_get.side_effect = requests.exceptions.ConnectionError()
        assert self.provider.health_check() is False

    @patch("smsledger.providers.ollama_provider.requests.get")
    def test_health_check_ok(self, mock_get):
        mock_get.return_value = http_response(payload={"models": [{"name": "llama3:latest"}]})
        assert self.provider.health_check() is True
