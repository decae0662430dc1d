import pytest

from fakes import CSV_BYTES, PDF_BYTES
from upload_review.core.config import DEFAULT_ALLOWED_EXTENSIONS, DEFAULT_ALLOWED_MIME_TYPES
from upload_review.service.validation import FileValidator, detect_content_type


@pytest.fixture
def validator():
    return FileValidator(1024, DEFAULT_ALLOWED_EXTENSIONS, DEFAULT_ALLOWED_MIME_TYPES)


@pytest.mark.parametrize(
    "data, expected",
    [
        (PDF_BYTES, "application/pdf"),
        (b"PK\x03\x04rest", "application/zip"),
        (b"\x89PNG\r\n\x1a\n....", "image/png"),
        (b"MZ\x90\x00", "application/x-msdownload"),
        (CSV_BYTES, "text/plain; charset=utf-8"),
        (b"\x00\x01\x02binary", "application/octet-stream"),
        (b"", "text/plain; charset=utf-8"),
    ],
)
def test_detect_content_type(data, expected):
    assert detect_content_type(data) == expected


def test_valid_pdf(validator):
    result = validator.validate("report.pdf", PDF_BYTES)
    assert result.valid
    assert result.file_type == ".pdf"
    assert result.detected_mime == "application/pdf"
    assert result.error_message() == ""


def test_valid_csv(validator):
    assert validator.validate("data.CSV", CSV_BYTES).valid


def test_office_files_are_zip_containers(validator):
    assert validator.validate("sheet.xlsx", b"PK\x03\x04" + b"\x00" * 20).valid


def test_disallowed_extension(validator):
    result = validator.validate("notes.md", b"# title\n")
    assert not result.valid
    assert "extension '.md' not allowed" in result.error_message()


def test_content_must_match_extension(validator):
    result = validator.validate("report.pdf", CSV_BYTES)
    assert not result.valid
    assert "does not match" in result.error_message()


def test_oversized_file(validator):
    result = validator.validate("data.csv", b"a" * 1025)
    assert not result.valid
    assert "exceeds maximum" in result.error_message()


def test_executable_collects_every_error(validator):
    result = validator.validate("setup.exe", b"MZ\x90\x00")
    assert not result.valid
    assert len(result.errors) >= 2


def test_empty_allow_lists_allow_everything():
    validator = FileValidator(1024)
    assert validator.is_allowed_extension(".anything")
    assert validator.is_allowed_mime_type("video/mp4")


def test_wildcard_mime_types():
    validator = FileValidator(1024, allowed_mime_types=["image/*"])
    assert validator.is_allowed_mime_type("image/png")
    assert not validator.is_allowed_mime_type("application/pdf")


def test_unknown_extension_skips_type_match(validator):
    assert validator.mime_matches_extension(".weird", "application/pdf")
