"""
Receipt extraction through an OpenAI compatible vision endpoint
"""
import hashlib
import json
import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from chainverify.schemas.fraud import DeclaredPayment, ReceiptAnalysis

logger = logging.getLogger(__name__)

RECEIPT_PROMPT = """You verify payment receipts. Read the image and answer with one JSON object:
{
  "extracted_fields": {"amount": number|null, "currency": str|null, "payment_method": str|null,
                       "from_address": str|null, "to_address": str|null,
                       "transaction_reference": str|null, "institution": str|null},
  "confidence": number between 0 and 1,
  "fraud_indicators": {"image_manipulation": bool, "inconsistent_fonts": bool, "blurred_regions": bool,
                       "watermark_anomaly": bool, "exif_inconsistency": bool},
  "receipt_authenticity": {"format_consistent": bool, "institution_matches_method": bool,
                           "amount_consistent": bool},
  "risk_score": number between 0 and 1,
  "analysis_text": str
}"""


class ReceiptAnalysisError(Exception):
    """Extraction call failed or answered something unusable"""
    pass


def hash_proof_image(data: bytes) -> str:
    """SHA-256 hex digest of the raw image bytes"""
    return hashlib.sha256(data).hexdigest()


class ReceiptAnalyzer:
    """Client for the receipt extraction call"""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        model: str,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._client = client

    def _expected_text(self, expected: DeclaredPayment) -> str:
        return (
            "The customer declared: "
            f"amount={expected.amount}, currency={expected.currency}, "
            f"payment_method={expected.payment_method}. "
            "Set receipt_authenticity.amount_consistent and institution_matches_method accordingly."
        )

    async def _post(self, payload: dict) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        url = f"{self.base_url}/v1/chat/completions"
        if self._client is not None:
            return await self._client.post(url, json=payload, headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, json=payload, headers=headers)

    async def extract(self, image_url: str, expected: DeclaredPayment) -> ReceiptAnalysis:
        """
        Extract receipt fields and forensics flags

        Args:
            image_url: where the proof image can be fetched
            expected: declared payment, given to the model for consistency checks

        Returns:
            ReceiptAnalysis

        Raises:
            ReceiptAnalysisError: any transport, status or parsing problem
        """
        if not self.api_key:
            raise ReceiptAnalysisError("receipt analysis API key not configured")

        payload = {
            "model": self.model,
            "response_format": {"type": "json_object"},
            "temperature": 0,
            "messages": [
                {"role": "system", "content": RECEIPT_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": self._expected_text(expected)},
                        {"type": "image_url", "image_url": {"url": image_url}},
                    ],
                },
            ],
        }

        try:
            response = await self._post(payload)
        except httpx.HTTPError as e:
            raise ReceiptAnalysisError(f"receipt analysis request failed: {e}") from e

        if response.status_code != 200:
            raise ReceiptAnalysisError(f"receipt analysis returned HTTP {response.status_code}")

        try:
            content = response.json()["choices"][0]["message"]["content"]
            return ReceiptAnalysis.model_validate(json.loads(content))
        except (ValueError, KeyError, IndexError, TypeError, ValidationError) as e:
            raise ReceiptAnalysisError(f"unusable receipt analysis answer: {e}") from e
