"""Tests for the free-text service classifier."""

import json
import uuid
from unittest.mock import MagicMock, patch

import pytest
import requests

from medbook.config import settings
from medbook.db.models import Doctor, Service
from medbook.services.classifier import ServiceClassifier


def completion(content, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.text = content if isinstance(content, str) else json.dumps(content)
    response.json.return_value = {"choices": [{"message": {"content": content}}]}
    return response


class TestServiceClassifier:
    """Test classification against the catalog."""

    @pytest.fixture
    def catalog(self):
        return [
            Service(
                id=uuid.uuid4(),
                name_arm="Խորհրդատվություն",
                name_ru="Консультация",
                default_duration_minutes=30,
            ),
            Service(
                id=uuid.uuid4(),
                name_arm="Մաքրում",
                name_ru="Чистка",
                default_duration_minutes=60,
            ),
        ]

    @pytest.fixture
    def classifier(self):
        return ServiceClassifier(
            base_url="https://llm.example.com/v1/",
            api_key="test-key",
            model="test-model",
            threshold=0.7,
            timeout=8,
        )

    @pytest.mark.asyncio
    async def test_confident_match(self, classifier, catalog):
        content = json.dumps({"service_id": str(catalog[1].id), "confidence": 0.92})

        with patch(
            "medbook.services.classifier.requests.post", return_value=completion(content)
        ) as mock_post:
            result = await classifier.classify("teeth cleaning please", catalog)

        assert result.service_id == catalog[1].id
        assert result.duration_minutes == 60
        assert result.confidence == pytest.approx(0.92)
        args, kwargs = mock_post.call_args
        assert args[0] == "https://llm.example.com/v1/chat/completions"
        assert kwargs["timeout"] == 8
        assert kwargs["headers"]["Authorization"] == "Bearer test-key"
        assert str(catalog[0].id) in kwargs["json"]["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_fenced_json(self, classifier, catalog):
        content = (
            "```json\n"
            + json.dumps({"service_id": str(catalog[0].id), "confidence": 0.8})
            + "\n```"
        )

        with patch("medbook.services.classifier.requests.post", return_value=completion(content)):
            result = await classifier.classify("consultation", catalog)

        assert result.service_id == catalog[0].id

    @pytest.mark.asyncio
    async def test_below_threshold(self, classifier, catalog):
        content = json.dumps({"service_id": str(catalog[0].id), "confidence": 0.5})

        with patch("medbook.services.classifier.requests.post", return_value=completion(content)):
            assert await classifier.classify("maybe a consultation", catalog) is None

    @pytest.mark.asyncio
    async def test_unknown_service_id(self, classifier, catalog):
        content = json.dumps({"service_id": str(uuid.uuid4()), "confidence": 0.99})

        with patch("medbook.services.classifier.requests.post", return_value=completion(content)):
            assert await classifier.classify("surgery", catalog) is None

    @pytest.mark.asyncio
    async def test_null_service(self, classifier, catalog):
        content = json.dumps({"service_id": None, "confidence": 0.9})

        with patch("medbook.services.classifier.requests.post", return_value=completion(content)):
            assert await classifier.classify("hello", catalog) is None

    @pytest.mark.asyncio
    async def test_garbage_output(self, classifier, catalog):
        with patch(
            "medbook.services.classifier.requests.post",
            return_value=completion("I think it is a cleaning"),
        ):
            assert await classifier.classify("cleaning", catalog) is None

    @pytest.mark.asyncio
    async def test_http_error(self, classifier, catalog):
        with patch(
            "medbook.services.classifier.requests.post",
            return_value=completion("rate limited", status_code=429),
        ):
            assert await classifier.classify("cleaning", catalog) is None

    @pytest.mark.asyncio
    async def test_timeout(self, classifier, catalog):
        with patch(
            "medbook.services.classifier.requests.post",
            side_effect=requests.exceptions.Timeout("slow"),
        ):
            assert await classifier.classify("cleaning", catalog) is None

    @pytest.mark.asyncio
    async def test_empty_text_skips_request(self, classifier, catalog):
        with patch("medbook.services.classifier.requests.post") as mock_post:
            assert await classifier.classify("   ", catalog) is None

        mock_post.assert_not_called()


class TestForDoctor:
    """Test per-doctor classifier construction."""

    def test_disabled(self):
        assert ServiceClassifier.for_doctor(Doctor(first_name="A", ai_enabled=False)) is None

    def test_enabled_without_key(self):
        with patch.object(settings, "llm_api_key", None):
            assert ServiceClassifier.for_doctor(Doctor(first_name="A", ai_enabled=True)) is None

    def test_doctor_overrides(self):
        doctor = Doctor(
            first_name="A",
            ai_enabled=True,
            llm_api_key="doctor-key",
            llm_api_base_url="https://other.example.com/v1",
            llm_model_name="other-model",
        )

        classifier = ServiceClassifier.for_doctor(doctor)

        assert classifier.api_key == "doctor-key"
        assert classifier.base_url == "https://other.example.com/v1"
        assert classifier.model == "other-model"
        assert classifier.threshold == settings.classifier_confidence_threshold
