"""
Service Classifier

Maps a patient's free-text visit reason onto the doctor's service catalog
using an OpenAI-compatible chat completions endpoint.

The classifier never decides on its own: anything short of a confident,
known catalog match comes back as None and the patient picks manually.
"""

import asyncio
import json
import logging
import re
import uuid
from typing import Any, Dict, List, Optional, Sequence

import requests

from medbook.config import settings
from medbook.db.models import Doctor, Service
from medbook.models.schemas import ClassificationResult

logger = logging.getLogger(__name__)


class ClassifierError(Exception):
    """Custom exception for classifier request and parsing failures."""
    pass


class ServiceClassifier:
    """
    Classifier for free-text visit reasons.

    Args:
        base_url: Chat completions base URL (without /chat/completions)
        api_key: Bearer token for the endpoint
        model: Model name
        threshold: Minimum confidence for a match to be accepted
        timeout: Request timeout in seconds
    """

    SYSTEM_PROMPT = """You classify a patient's reason for visiting a doctor into one service from the clinic catalog.

## Rules:
- Choose exactly one service id from the catalog, or null if none fits
- Never invent ids that are not in the catalog
- The reason may be written in Armenian, Russian or English
- confidence is your probability (0.0-1.0) that the chosen service is right

## Response Format:
Respond with VALID JSON only, no markdown:
{"service_id": "<catalog id or null>", "confidence": 0.0}
"""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        threshold: Optional[float] = None,
        timeout: Optional[float] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.threshold = (
            threshold if threshold is not None else settings.classifier_confidence_threshold
        )
        self.timeout = timeout or settings.external_timeout_seconds

    @classmethod
    def for_doctor(cls, doctor: Doctor) -> Optional["ServiceClassifier"]:
        """Build the classifier when the doctor enabled it and a key is available."""
        if not doctor.ai_enabled:
            return None

        api_key = doctor.llm_api_key or settings.llm_api_key
        if not api_key:
            logger.warning(f"Classifier enabled for doctor {doctor.id} but no API key configured")
            return None

        return cls(
            base_url=doctor.llm_api_base_url or settings.llm_api_base_url,
            api_key=api_key,
            model=doctor.llm_model_name or settings.llm_model_name,
        )

    async def classify(
        self, text: str, catalog: Sequence[Service]
    ) -> Optional[ClassificationResult]:
        """
        Classify free text against the active catalog.

        Args:
            text: Patient's reason as typed
            catalog: Active services of the doctor

        Returns:
            The match, or None when unsure, unmatched or on any failure
        """
        if not text.strip() or not catalog:
            return None

        try:
            raw = await asyncio.to_thread(
                self._send_request, self._build_user_message(text, catalog)
            )
            result = self._parse_response(raw, catalog)
        except ClassifierError as e:
            logger.warning(f"Service classification failed: {e}")
            return None

        if result is None:
            logger.info("Classifier found no confident service match")
        else:
            logger.info(
                f"Classified reason as service {result.service_id} "
                f"with confidence {result.confidence:.2f}"
            )
        return result

    def _build_user_message(self, text: str, catalog: Sequence[Service]) -> str:
        lines = [
            f"- {service.id}: {service.name_ru} / {service.name_arm}" for service in catalog
        ]
        return "## Catalog:\n" + "\n".join(lines) + f"\n\n## Patient reason:\n{text.strip()}"

    def _send_request(self, user_message: str) -> str:
        """
        POST to the chat completions endpoint.

        Raises:
            ClassifierError: On network errors, timeouts or non-200 responses
        """
        messages: List[Dict[str, str]] = [
            {"role": "system", "content": self.SYSTEM_PROMPT},
            {"role": "user", "content": user_message},
        ]
        try:
            response = requests.post(
                f"{self.base_url}/chat/completions",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": self.model,
                    "messages": messages,
                    "temperature": 0,
                    "max_tokens": 100,
                },
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise ClassifierError("Classifier request timed out") from e
        except requests.exceptions.RequestException as e:
            raise ClassifierError(f"Cannot reach classifier at {self.base_url}: {e}") from e

        if response.status_code != 200:
            raise ClassifierError(
                f"Classifier returned status {response.status_code}: {response.text[:200]}"
            )

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ClassifierError(f"Unexpected classifier response shape: {e}") from e

        if not content:
            raise ClassifierError("Empty response from classifier")
        return content

    def _parse_response(
        self, raw: str, catalog: Sequence[Service]
    ) -> Optional[ClassificationResult]:
        """
        Validate the model output against the catalog and threshold.

        Raises:
            ClassifierError: If no JSON object can be read from the output
        """
        cleaned = raw.strip()
        if cleaned.startswith("```"):
            cleaned = cleaned.split("\n", 1)[1] if "\n" in cleaned else cleaned[3:]
            if cleaned.endswith("```"):
                cleaned = cleaned[:-3]

        match = re.search(r"\{.*\}", cleaned, re.DOTALL)
        if not match:
            raise ClassifierError(f"No JSON object in classifier output: {raw[:200]}")

        try:
            parsed: Dict[str, Any] = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise ClassifierError(f"Invalid JSON from classifier: {e}") from e

        raw_id = parsed.get("service_id")
        if not raw_id:
            return None

        try:
            service_id = uuid.UUID(str(raw_id))
            confidence = float(parsed.get("confidence", 0))
        except (ValueError, TypeError):
            logger.warning(f"Classifier returned unusable values: {parsed}")
            return None

        if not 0 <= confidence <= 1 or confidence < self.threshold:
            return None

        service = next((s for s in catalog if s.id == service_id), None)
        if service is None:
            logger.warning(f"Classifier returned unknown service id {service_id}")
            return None

        return ClassificationResult(
            service_id=service.id,
            duration_minutes=service.default_duration_minutes,
            confidence=confidence,
        )
