# tests/test_extraction.py
import pytest
from conftest import FakeChat

from modules.job_board.lib.extraction import (
    ExtractionError,
    ExtractionService,
    extract_json_from_response,
)
from modules.job_board.lib.models import Compensation, ExperienceRange, JobDetails


@pytest.mark.parametrize(
    "raw",
    [
        '{"a": 1}',
        'Sure! ```json\n{"a": 1}\n``` hope that helps',
        'prefix {"a": 1} suffix',
    ],
)
def test_extract_json_from_response_variants(raw):
    assert extract_json_from_response(raw) == {"a": 1}


def test_extract_json_from_response_rejects_non_objects():
    with pytest.raises(ValueError):
        extract_json_from_response("[1, 2, 3]")
    with pytest.raises(ValueError):
        extract_json_from_response("no json here")


def test_generate_structured_includes_schema_and_html():
    chat = FakeChat({"ok": True})
    svc = ExtractionService(chat)

    out = svc.generate_structured({"ok": "boolean"}, "Do the thing", "<p>hi</p>")

    assert out == {"ok": True}
    _, user_msg, json_mode = chat.calls[0]
    assert json_mode is True
    assert "Do the thing" in user_msg
    assert '"ok": "boolean"' in user_msg
    assert "<p>hi</p>" in user_msg


def test_generate_structured_wraps_bad_json():
    svc = ExtractionService(FakeChat("I could not find anything"))
    with pytest.raises(ExtractionError):
        svc.generate_structured({}, "prompt")


def test_extract_job_links_requires_urls_list():
    svc = ExtractionService(FakeChat({"links": ["/a"]}))
    with pytest.raises(ExtractionError):
        svc.extract_job_links("<html></html>")


def test_extract_job_links_filters_blank_entries():
    svc = ExtractionService(FakeChat({"urls": [" /a ", "", 3, "/b"]}))
    assert svc.extract_job_links("<html></html>") == ["/a", "/b"]


def test_extract_job_details_keeps_valid_fields_only():
    reply = {
        "title": "Data Engineer",
        "locations": ["Berlin", "", 5],
        "education_level": "Masters",
        "years_of_experience": {"min": 3, "max": None},
        "role_type": "astronaut",
        "employment_type": "permanent",
        "is_internship": "no",
        "compensation": {"type": "annual", "min": 70000, "max": 90000, "currency": "EUR"},
        "remote_options": "hybrid",
        "equity": {"percentage": 0.1},
        "unrelated": "ignored",
    }
    details = ExtractionService(FakeChat(reply)).extract_job_details("<html><p>posting</p></html>")

    assert details == JobDetails(
        title="Data Engineer",
        locations=["Berlin"],
        education_level="masters",
        years_of_experience=ExperienceRange(min=3),
        employment_type="permanent",
        compensation=Compensation(type="annual", min=70000, max=90000, currency="EUR"),
        remote_options="hybrid",
    )


def test_extract_job_details_empty_reply_gives_empty_details():
    details = ExtractionService(FakeChat({})).extract_job_details("<html></html>")
    assert details.is_empty()


def test_details_prompt_truncates_page():
    chat = FakeChat({})
    ExtractionService(chat).extract_job_details("<p>" + "x" * 20000 + "</p>")
    _, user_msg, _ = chat.calls[0]
    assert "x" * 8000 not in user_msg
    assert "x" * 7000 in user_msg
