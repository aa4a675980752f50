import json
import re
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Literal, TypeVar

import requests
from pydantic import BaseModel, ValidationError

from screencap.watchers.logger import logger

log = logger.getChild("OpenRouterClient")

OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_MODEL = "openai/gpt-5"
DEFAULT_TIMEOUT = 90.0
TEST_TIMEOUT = 15.0
CALL_RECORD_LIMIT = 5_000

HTTP_OK = 200
HTTP_MULTIPLE_CHOICES = 300

_JSON_BLOCK = re.compile(r"\{[\s\S]*\}")

ModelT = TypeVar("ModelT", bound=BaseModel)


# --- errors ---


class OpenRouterError(Exception):
    """OpenRouter 呼び出しに関するエラーの基底クラス."""


class NoApiKeyError(OpenRouterError):
    """API キーが設定されていない."""


class HttpStatusError(OpenRouterError):
    """2xx 以外のレスポンス."""

    def __init__(self, status: int, body: str) -> None:
        self.status = status
        self.body = body
        super().__init__(f"OpenRouter API error: {status} - {body}")


class NoContentError(OpenRouterError):
    """レスポンスに本文が無い."""


class SchemaViolationError(OpenRouterError):
    """本文が JSON として読めない、またはスキーマに合わない."""


class NetworkError(OpenRouterError):
    """タイムアウト・接続失敗."""


# --- call records ---


CallKind = Literal["json", "raw", "test"]


@dataclass(frozen=True)
class CallRecord:
    """OpenRouter 呼び出し1回分の記録（status 0 はネットワーク失敗）."""

    timestamp: int
    kind: CallKind
    model: str
    status: int


_call_records: deque[CallRecord] = deque(maxlen=CALL_RECORD_LIMIT)
_records_lock = threading.Lock()


def record_call(kind: CallKind, model: str, status: int) -> None:
    with _records_lock:
        _call_records.append(
            CallRecord(timestamp=int(time.time() * 1000), kind=kind, model=model, status=status)
        )


def call_records() -> list[CallRecord]:
    with _records_lock:
        return list(_call_records)


def reset_call_records() -> None:
    with _records_lock:
        _call_records.clear()


# --- client ---


def first_json_object(text: str) -> str:
    """テキスト中の最初の ``{`` から最後の ``}`` までを返す."""
    match = _JSON_BLOCK.search(text)
    if not match:
        msg = "No JSON found in response"
        raise SchemaViolationError(msg)
    return match.group(0)


@dataclass
class RequestOptions:
    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    timeout: float | None = None


class OpenRouterClient:
    """OpenRouter の chat completions API クライアント.

    すべての呼び出しは同期 (``requests``)。イベントループからは
    ``asyncio.to_thread`` 経由で使う。
    """

    def __init__(
        self,
        api_key: str | None,
        model: str = DEFAULT_MODEL,
        timeout: float = DEFAULT_TIMEOUT,
        api_url: str = OPENROUTER_API_URL,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.api_url = api_url

    def _headers(self, api_key: str) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
            "HTTP-Referer": "https://screencap.app",
            "X-Title": "Screencap",
        }

    def _require_key(self) -> str:
        if not self.api_key:
            msg = "API key not configured"
            raise NoApiKeyError(msg)
        return self.api_key

    def _build_body(
        self, messages: list[dict[str, Any]], options: RequestOptions
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": (options.model or "").strip() or self.model,
            "messages": messages,
            "reasoning_effort": "low",
        }
        if options.max_tokens is not None:
            body["max_tokens"] = options.max_tokens
        if options.temperature is not None:
            body["temperature"] = options.temperature
        return body

    def _post(self, kind: CallKind, body: dict[str, Any], timeout: float) -> requests.Response:
        api_key = self._require_key()
        try:
            response = requests.post(
                self.api_url,
                json=body,
                headers=self._headers(api_key),
                timeout=timeout,
            )
        except requests.RequestException as exc:
            record_call(kind, body["model"], 0)
            msg = f"OpenRouter request failed: {exc}"
            raise NetworkError(msg) from exc

        record_call(kind, body["model"], response.status_code)
        if not HTTP_OK <= response.status_code < HTTP_MULTIPLE_CHOICES:
            log.error("OpenRouter API error: %s %s", response.status_code, response.text)
            raise HttpStatusError(response.status_code, response.text)
        return response

    @staticmethod
    def _content(response: requests.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return ""
        # 形が違うレスポンスは本文なしとして扱う
        choices = data.get("choices") if isinstance(data, dict) else None
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return ""
        message = choices[0].get("message")
        content = message.get("content") if isinstance(message, dict) else None
        return content if isinstance(content, str) else ""

    def request(
        self,
        messages: list[dict[str, Any]],
        response_model: type[ModelT],
        options: RequestOptions | None = None,
    ) -> ModelT:
        """JSON を返させ、``response_model`` で検証したものを返す."""
        options = options or RequestOptions()
        body = self._build_body(messages, options)
        response = self._post("json", body, options.timeout or self.timeout)

        content = self._content(response)
        if not content:
            msg = "No response from LLM"
            raise NoContentError(msg)

        try:
            return response_model.model_validate(json.loads(first_json_object(content)))
        except (json.JSONDecodeError, ValidationError) as exc:
            msg = f"Response does not match {response_model.__name__}: {exc}"
            raise SchemaViolationError(msg) from exc

    def request_raw(
        self,
        messages: list[dict[str, Any]],
        options: RequestOptions | None = None,
    ) -> str:
        """本文テキストをそのまま返す（空なら空文字）."""
        options = options or RequestOptions()
        body = self._build_body(messages, options)
        response = self._post("raw", body, options.timeout or self.timeout)
        return self._content(response)

    def test_connection(self, model: str | None = None) -> tuple[bool, str | None]:
        """疎通確認。例外は投げずに (成功, エラー文) を返す."""
        if not self.api_key:
            return False, "API key not configured"

        selected = (model or "").strip() or self.model
        try:
            response = requests.post(
                self.api_url,
                json={"model": selected, "messages": [{"role": "user", "content": "Hello"}]},
                headers=self._headers(self.api_key),
                timeout=TEST_TIMEOUT,
            )
        except requests.RequestException as exc:
            return False, str(exc)

        record_call("test", selected, response.status_code)
        if HTTP_OK <= response.status_code < HTTP_MULTIPLE_CHOICES:
            return True, None
        return False, response.text
