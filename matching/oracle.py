"""Optional semantic-similarity oracle used by the scorer.

The scorer never depends on the oracle: any error raised here is caught there
and the token-overlap similarity is used instead.
"""
import logging
import math
from typing import Optional, Protocol

import httpx

from .errors import OracleError

logger = logging.getLogger(__name__)


class SimilarityOracle(Protocol):
    def similarity(self, text_a: str, text_b: str) -> float:
        ...


def check_similarity(value) -> float:
    """Validate an oracle answer; raise OracleError unless it is a number in [0, 1]."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise OracleError(f"Oracle returned a non-numeric similarity: {value!r}")
    value = float(value)
    if math.isnan(value) or value < 0.0 or value > 1.0:
        raise OracleError(f"Oracle similarity out of range: {value!r}")
    return value


class HttpSimilarityOracle:
    """Posts both texts to a similarity endpoint.

    Request body:  {"text_a": "...", "text_b": "..."}
    Response body: {"similarity": 0.0 - 1.0}
    """

    def __init__(
        self,
        url: str,
        api_key: str = "",
        timeout: float = 2.0,
        client: Optional[httpx.Client] = None,
    ):
        self.url = url
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.Client(timeout=timeout, headers=headers)

    def similarity(self, text_a: str, text_b: str) -> float:
        try:
            response = self._client.post(self.url, json={"text_a": text_a, "text_b": text_b})
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as exc:
            raise OracleError(f"Similarity oracle request failed: {exc}") from exc
        except ValueError as exc:
            raise OracleError("Similarity oracle returned invalid JSON") from exc

        if not isinstance(payload, dict) or "similarity" not in payload:
            raise OracleError(f"Similarity oracle returned an unexpected body: {payload!r}")
        return check_similarity(payload["similarity"])

    def close(self) -> None:
        self._client.close()
