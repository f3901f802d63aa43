from __future__ import annotations

import pytest

from app.generation.errors import InvalidRequestError, SubmissionError
from app.generation.models import JobKind
from app.generation.providers.base import ProviderError
from app.generation.submitter import JobSubmitter


@pytest.mark.parametrize(
  ("kind", "params"),
  [
    (JobKind.IMAGE, {}),
    (JobKind.IMAGE, {"prompt": "   "}),
    (JobKind.VIDEO, {"prompt": "waves"}),
    (JobKind.VIDEO, {"image_url": "https://cdn.test/a.png"}),
    (JobKind.SPEECH, {"voice": "Rachel"}),
  ],
)
def test_missing_required_parameters_are_rejected(scripted_provider, kind: JobKind, params: dict) -> None:
  submitter = JobSubmitter({kind: scripted_provider(kind)})

  with pytest.raises(InvalidRequestError):
    submitter.validate(kind, params)


def test_video_source_must_be_url_or_data_uri(scripted_provider) -> None:
  submitter = JobSubmitter({JobKind.VIDEO: scripted_provider(JobKind.VIDEO)})

  with pytest.raises(InvalidRequestError):
    submitter.validate(JobKind.VIDEO, {"prompt": "waves", "image_url": "/etc/passwd"})
  submitter.validate(JobKind.VIDEO, {"prompt": "waves", "image_url": "data:image/png;base64,AAAA"})
  submitter.validate(JobKind.VIDEO, {"prompt": "waves", "image_url": "https://cdn.test/a.png"})


def test_unconfigured_kind_is_invalid(scripted_provider) -> None:
  submitter = JobSubmitter({JobKind.IMAGE: scripted_provider(JobKind.IMAGE)})

  with pytest.raises(InvalidRequestError):
    submitter.validate(JobKind.VIDEO, {"prompt": "waves", "image_url": "https://cdn.test/a.png"})


@pytest.mark.anyio
async def test_submit_makes_exactly_one_call(scripted_provider) -> None:
  provider = scripted_provider(JobKind.IMAGE)
  submitter = JobSubmitter({JobKind.IMAGE: provider})

  handle = await submitter.submit(JobKind.IMAGE, {"prompt": "a red fox"})

  assert handle.job_id == "job-1"
  assert handle.kind == JobKind.IMAGE
  assert provider.submitted == [{"prompt": "a red fox"}]


@pytest.mark.anyio
@pytest.mark.parametrize(("status_code", "retryable"), [(503, True), (401, False)])
async def test_provider_errors_become_submission_errors(scripted_provider, status_code: int, retryable: bool) -> None:
  error = ProviderError("rejected", status_code=status_code, retryable=retryable)
  submitter = JobSubmitter({JobKind.IMAGE: scripted_provider(JobKind.IMAGE, submit_error=error)})

  with pytest.raises(SubmissionError) as exc_info:
    await submitter.submit(JobKind.IMAGE, {"prompt": "a red fox"})

  assert exc_info.value.retryable is retryable
  assert exc_info.value.status_code == status_code


@pytest.mark.parametrize(
  ("kind", "params"),
  [
    (JobKind.VIDEO, {"prompt": "waves", "image_url": "https://cdn.test/a.png", "duration": "five"}),
    (JobKind.VIDEO, {"prompt": "waves", "image_url": "https://cdn.test/a.png", "duration": 0}),
    (JobKind.VIDEO, {"prompt": "waves", "image_url": "https://cdn.test/a.png", "ratio": 1.6}),
    (JobKind.IMAGE, {"prompt": "a fox", "num_images": True}),
    (JobKind.SPEECH, {"text": "hello", "voice": ["Rachel"]}),
  ],
)
def test_malformed_optional_parameters_are_rejected(scripted_provider, kind: JobKind, params: dict) -> None:
  submitter = JobSubmitter({kind: scripted_provider(kind)})

  with pytest.raises(InvalidRequestError):
    submitter.validate(kind, params)


def test_well_formed_optional_parameters_pass(scripted_provider) -> None:
  submitter = JobSubmitter({JobKind.VIDEO: scripted_provider(JobKind.VIDEO)})

  submitter.validate(JobKind.VIDEO, {"prompt": "waves", "image_url": "https://cdn.test/a.png", "duration": 10, "ratio": "768:1280"})
  submitter.validate(JobKind.VIDEO, {"prompt": "waves", "image_url": "https://cdn.test/a.png", "duration": "5"})
