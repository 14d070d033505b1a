from govintel.core.config import Settings
from govintel.core.telemetry import _parse_headers, set_job_span_attributes, setup_worker_telemetry


class RecordingSpan:
    def __init__(self) -> None:
        self.attributes: dict[str, object] = {}

    def set_attribute(self, key: str, value: object) -> None:
        self.attributes[key] = value


def test_parse_headers_drops_malformed_pairs() -> None:
    assert _parse_headers("authorization=Bearer abc, x-tenant = ops ,broken,=empty") == {
        "authorization": "Bearer abc",
        "x-tenant": "ops",
    }
    assert _parse_headers(None) == {}


def test_job_span_attributes_skip_missing_fields(job_factory) -> None:
    span = RecordingSpan()

    set_job_span_attributes(span, job_factory(triggered_by=None))

    assert span.attributes == {
        "job.id": "11111111-1111-1111-1111-111111111111",
        "job.source": "sam_gov",
        "job.run_type": "incremental",
        "job.attempt": 1,
        "job.priority": 2,
    }


def test_disabled_telemetry_is_a_noop() -> None:
    runtime = setup_worker_telemetry(Settings(database_url=None, otel_enabled=False), worker_id="w:1")

    assert runtime.enabled is False
    assert runtime.provider is None
    assert runtime.component == "worker"
