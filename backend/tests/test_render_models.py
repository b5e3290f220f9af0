import pytest
from pydantic import ValidationError

from models.render_models import (
    DeliveryMode,
    InputSpec,
    RenderErrorResponse,
    RenderJob,
    RenderJobStatus,
    RenderProgress,
    ResourceSpec,
)


def _job(**overrides) -> dict:
    data = {
        "inputs": [{"locator": "a.jpg"}],
        "filter_graph": "[0:v]scale=640:480[v]",
    }
    data.update(overrides)
    return data


class TestInputSpec:
    def test_defaults(self):
        spec = InputSpec(locator="a.jpg")

        assert spec.engine_options == []
        assert spec.materialize is False
        assert spec.headers == {}

    def test_materialized_input_requires_fetchable_scheme(self):
        with pytest.raises(ValidationError):
            InputSpec(locator="/local/file.mp4", materialize=True)

        spec = InputSpec(locator="gs://bucket/clip.mp4", materialize=True)
        assert spec.materialize

    def test_engine_locator_allowed_when_not_materialized(self):
        spec = InputSpec(locator="color=c=black:s=1280x720", engine_options=["-f", "lavfi"])

        assert spec.locator == "color=c=black:s=1280x720"

    @pytest.mark.parametrize(
        "locator, suffix",
        [
            ("https://cdn.example.com/clip.MOV?sig=abc", ".mov"),
            ("https://cdn.example.com/download", ".bin"),
            ("https://cdn.example.com/archive.verylongext", ".bin"),
        ],
    )
    def test_local_suffix(self, locator, suffix):
        assert InputSpec(locator=locator).local_suffix() == suffix

    def test_frozen(self):
        spec = InputSpec(locator="a.jpg")

        with pytest.raises(ValidationError):
            spec.locator = "b.jpg"


class TestResourceSpec:
    def test_valid(self):
        spec = ResourceSpec(name="font.ttf", locator="https://cdn.example.com/f.ttf")

        assert spec.name == "font.ttf"

    @pytest.mark.parametrize(
        "name",
        ["", "../font.ttf", "fonts/font.ttf", "fonts\\font.ttf", ".hidden", "{{font}}", "x" * 256],
    )
    def test_unsafe_names_rejected(self, name):
        with pytest.raises(ValidationError):
            ResourceSpec(name=name, locator="https://cdn.example.com/f.ttf")

    def test_locator_scheme_rejected(self):
        with pytest.raises(ValidationError):
            ResourceSpec(name="font.ttf", locator="file:///etc/passwd")


class TestRenderJob:
    def test_defaults(self):
        job = RenderJob.model_validate(_job())

        assert len(job.job_id) == 32
        assert job.resources == []
        assert job.output_options == []
        assert job.output_format == "mp4"
        assert job.delivery is None
        assert job.output_filename() == "output.mp4"

    def test_inputs_required(self):
        with pytest.raises(ValidationError):
            RenderJob.model_validate(_job(inputs=[]))

    def test_blank_filter_graph_rejected(self):
        with pytest.raises(ValidationError):
            RenderJob.model_validate(_job(filter_graph="   "))

    def test_duplicate_resource_names_rejected(self):
        resource = {"name": "font.ttf", "locator": "https://cdn.example.com/f.ttf"}

        with pytest.raises(ValidationError, match="Duplicate resource names: font.ttf"):
            RenderJob.model_validate(_job(resources=[resource, resource]))

    def test_output_format_normalized(self):
        job = RenderJob.model_validate(_job(output_format=".MOV"))

        assert job.output_filename() == "output.mov"

    @pytest.mark.parametrize("fmt", ["mp4/../x", "", "m p4"])
    def test_bad_output_format(self, fmt):
        with pytest.raises(ValidationError):
            RenderJob.model_validate(_job(output_format=fmt))

    @pytest.mark.parametrize("key", ["/abs/out.mp4", "a/../../out.mp4", "  "])
    def test_bad_output_key(self, key):
        with pytest.raises(ValidationError):
            RenderJob.model_validate(_job(output_key=key))

    @pytest.mark.parametrize("job_id", ["has space", "a/b", "x" * 65])
    def test_bad_job_id(self, job_id):
        with pytest.raises(ValidationError):
            RenderJob.model_validate(_job(job_id=job_id))

    def test_delivery_and_limits(self):
        job = RenderJob.model_validate(
            _job(delivery="storage", total_frames=120, timeout_seconds=30)
        )

        assert job.delivery == DeliveryMode.STORAGE
        assert job.total_frames == 120

        with pytest.raises(ValidationError):
            RenderJob.model_validate(_job(total_frames=0))
        with pytest.raises(ValidationError):
            RenderJob.model_validate(_job(timeout_seconds=0))

    def test_resource_names_in_declaration_order(self):
        job = RenderJob.model_validate(
            _job(
                resources=[
                    {"name": "logo.png", "locator": "https://cdn.example.com/l.png"},
                    {"name": "font.ttf", "locator": "gs://assets/f.ttf"},
                ]
            )
        )

        assert job.resource_names() == ["logo.png", "font.ttf"]


class TestResponses:
    def test_error_envelope(self):
        body = RenderErrorResponse.model_validate(
            {"error": {"kind": "validation_error", "job_id": "job-1", "detail": "bad"}}
        )

        assert body.ok is False
        assert body.error.phase is None

    def test_progress_bounds(self):
        update = RenderProgress(job_id="job-1", status=RenderJobStatus.PROCESSING, progress=50)

        assert update.model_dump(mode="json")["status"] == "processing"
        with pytest.raises(ValidationError):
            RenderProgress(job_id="job-1", status="processing", progress=101)
