from __future__ import annotations

import io
import json

import pytest
from PIL import Image

from bulkgen.exceptions import (
    GenerationUnavailableError,
    ReferenceLimitError,
    is_auth_failure,
    is_stale_context_failure,
)
from bulkgen.factory import build_client, client_available, load_client_class
from bulkgen.mock import MockGenerationClient, render_mock_png
from bulkgen.models import (
    AspectRatio,
    ReferenceCategory,
    ReferenceImage,
    VideoModel,
    validate_references,
)
from bulkgen.utils import decode_media, ensure_png, parse_cookie, secure_filename, strip_data_uri, to_data_uri


def test_parse_cookie_variants() -> None:
    assert parse_cookie("a=1; b=2").cookie_string == "a=1; b=2"
    assert parse_cookie("Cookie: a=1").cookie_string == "a=1"
    assert parse_cookie('"a=1"').cookie_string == "a=1"
    assert parse_cookie('{"cookie": "Cookie: a=1"}').cookie_string == "a=1"
    assert parse_cookie('{"name": "sid", "value": "xyz"}').cookie_string == "sid=xyz"
    assert parse_cookie('{"a": "1", "b": "2"}').cookie_string == "a=1; b=2"
    assert parse_cookie(None).cookie_string == ""


def test_parse_cookie_browser_export_keeps_session_expiry() -> None:
    exported = json.dumps(
        [
            {"name": "theme", "value": "dark"},
            {"name": "__Secure-next-auth.session-token", "value": "tok", "expirationDate": 1700000000.5},
        ]
    )

    parsed = parse_cookie(exported)

    assert parsed.cookie_string == "theme=dark; __Secure-next-auth.session-token=tok"
    assert parsed.expires_at_ms == 1700000000500


def test_parse_cookie_invalid_json_is_kept_raw() -> None:
    assert parse_cookie("{broken").cookie_string == "{broken"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("1:1", AspectRatio.square),
        ("16:9", AspectRatio.landscape),
        ("9:16", AspectRatio.portrait),
        ("portrait", AspectRatio.portrait),
        ("LANDSCAPE", AspectRatio.landscape),
        ("4:3", AspectRatio.square),
        (None, AspectRatio.square),
    ],
)
def test_aspect_ratio_parse(raw, expected) -> None:
    assert AspectRatio.parse(raw) is expected


def test_remote_values() -> None:
    assert AspectRatio.landscape.remote_value == "IMAGE_ASPECT_RATIO_LANDSCAPE"
    assert ReferenceCategory.scene.remote_value == "MEDIA_CATEGORY_SCENE"
    assert VideoModel.parse("VEO_3_1") is VideoModel.veo_3_1
    assert VideoModel.parse("anything else") is VideoModel.veo_fast_3_1


def test_reference_limit_per_category() -> None:
    refs = [ReferenceImage(ReferenceCategory.subject, "aGk=") for _ in range(3)]
    refs.append(ReferenceImage(ReferenceCategory.style, "aGk="))
    assert len(validate_references(refs)) == 4

    with pytest.raises(ReferenceLimitError):
        validate_references(refs + [ReferenceImage(ReferenceCategory.subject, "aGk=")])


def test_reference_from_dict_normalises() -> None:
    ref = ReferenceImage.from_dict({"category": "style", "image": "aGk=", "caption": "  "})

    assert ref.category is ReferenceCategory.style
    assert ref.caption is None
    assert ReferenceImage.from_dict(ref.to_dict()) == ref


def test_error_classification() -> None:
    assert is_auth_failure("HTTP 401 Unauthorized")
    assert is_auth_failure("unauthorized request")
    assert not is_auth_failure("HTTP 500")
    assert not is_auth_failure(None)
    assert is_stale_context_failure("Project not found")
    assert is_stale_context_failure("HTTP 503")
    assert is_stale_context_failure("read ECONNRESET")
    assert not is_stale_context_failure("prompt blocked by safety filter")


def test_media_helpers() -> None:
    assert strip_data_uri("data:image/png;base64,aGk=") == "aGk="
    assert to_data_uri("aGk=") == "data:image/png;base64,aGk="
    assert to_data_uri("data:video/mp4;base64,aGk=") == "data:video/mp4;base64,aGk="
    assert decode_media("data:image/png;base64,aGk=") == b"hi"
    with pytest.raises(ValueError):
        decode_media("not base64!!")
    assert secure_filename("../../etc/pass wd") == "pass_wd"


def test_ensure_png_converts_jpeg() -> None:
    buffer = io.BytesIO()
    Image.new("RGB", (4, 4), (0, 128, 0)).save(buffer, format="JPEG")

    converted = ensure_png(buffer.getvalue())

    with Image.open(io.BytesIO(converted)) as image:
        assert image.format == "PNG"
    with pytest.raises(ValueError):
        ensure_png(b"definitely not an image")


def test_mock_render_is_deterministic() -> None:
    first, seed = render_mock_png("a cat", AspectRatio.portrait)
    second, same_seed = render_mock_png("a cat", AspectRatio.portrait)

    assert first == second
    assert seed == same_seed
    with Image.open(io.BytesIO(first)) as image:
        assert image.size == (9, 16)


def test_factory_resolution() -> None:
    assert isinstance(build_client("MOCK"), MockGenerationClient)
    with pytest.raises(GenerationUnavailableError):
        build_client("real-cookie")
    with pytest.raises(GenerationUnavailableError):
        load_client_class("no_such_module_here:Client")
    assert client_available("bulkgen.mock:MockGenerationClient")
    assert not client_available(None)
    assert isinstance(build_client("real", "bulkgen.mock:MockGenerationClient"), MockGenerationClient)
