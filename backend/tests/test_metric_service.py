"""
SIHA Backend — Metric Service Tests
=====================================

What:  Tests the vitals → MetricRecord mapping and persistence error handling.
How:   Records are built in memory; the session is an AsyncMock.
"""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from siha.exceptions import AIServiceError, DatabaseError
from siha.services.metric_service import MetricService


@pytest.fixture
def metric_service():
    return MetricService()


class TestBuildRecords:

    def test_one_record_per_vital(self, metric_service, face_result):
        user_id = uuid4()

        records = metric_service.build_records(user_id, face_result)

        by_type = {r.metric_type: r for r in records}
        assert set(by_type) == {"heart_rate", "stress_level", "oxygen_saturation", "respiratory_rate"}
        assert by_type["heart_rate"].value == Decimal("72.00")
        assert by_type["heart_rate"].unit == "bpm"
        assert by_type["oxygen_saturation"].unit == "%"
        assert by_type["respiratory_rate"].unit == "breaths/min"
        assert by_type["stress_level"].unit == "score"
        for record in records:
            assert record.user_id == user_id
            assert record.source == "ai_face_analysis"
            assert record.confidence == Decimal("0.87")
            assert record.start_time == datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc)

    def test_temperature_in_celsius(self, metric_service):
        result = {"faceDetected": True, "vitals": {"temperature": 36.65}}

        (record,) = metric_service.build_records(uuid4(), result)

        assert record.metric_type == "temperature"
        assert record.unit == "°C"
        assert record.confidence is None

    def test_missing_timestamp_uses_now(self, metric_service):
        before = datetime.now(timezone.utc)

        (record,) = metric_service.build_records(
            uuid4(), {"faceDetected": True, "vitals": {"heartRate": 60}}
        )

        assert record.start_time >= before

    def test_no_face_means_no_records(self, metric_service, face_result):
        face_result["faceDetected"] = False
        assert metric_service.build_records(uuid4(), face_result) == []

    def test_no_vitals_means_no_records(self, metric_service):
        assert metric_service.build_records(uuid4(), {"faceDetected": True}) == []

    def test_malformed_result(self, metric_service):
        with pytest.raises(AIServiceError):
            metric_service.build_records(
                uuid4(), {"faceDetected": True, "vitals": {"heartRate": "fast"}}
            )


class TestSaveVitals:

    @pytest.mark.asyncio
    async def test_adds_and_flushes(self, metric_service, mock_db_session, face_result):
        saved = await metric_service.save_vitals(mock_db_session, uuid4(), face_result)

        assert saved == 4
        mock_db_session.add_all.assert_called_once()
        assert len(mock_db_session.add_all.call_args.args[0]) == 4
        mock_db_session.flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_nothing_to_save_skips_session(self, metric_service, mock_db_session):
        saved = await metric_service.save_vitals(mock_db_session, uuid4(), {"faceDetected": False})

        assert saved == 0
        mock_db_session.add_all.assert_not_called()

    @pytest.mark.asyncio
    async def test_flush_failure_wrapped(self, metric_service, mock_db_session, face_result):
        mock_db_session.flush.side_effect = OperationalError("INSERT", {}, Exception("db down"))

        with pytest.raises(DatabaseError):
            await metric_service.save_vitals(mock_db_session, uuid4(), face_result)
