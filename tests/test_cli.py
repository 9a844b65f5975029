from __future__ import annotations

from pathlib import Path

import pytest

from bulkgen.cli import main, parse_args, parse_reference
from bulkgen.models import ReferenceCategory
from bulkgen.utils import decode_media


def test_run_arguments(tmp_path: Path) -> None:
    args = parse_args(
        [
            "--server",
            "http://proxy:5000",
            "--state-dir",
            str(tmp_path),
            "run",
            "--cookie",
            "MOCK",
            "--prompts",
            "prompts.txt",
            "--count",
            "3",
            "--reference",
            "style=ref.png",
        ]
    )

    assert args.command == "run"
    assert args.count == 3
    assert args.aspect == "16:9"
    assert args.state_dir == tmp_path
    assert args.reference == ["style=ref.png"]


def test_parse_reference_reads_file(tmp_path: Path) -> None:
    image = tmp_path / "ref.png"
    image.write_bytes(b"png-bytes")

    reference = parse_reference(f"subject={image}:my cat")

    assert reference.category is ReferenceCategory.subject
    assert decode_media(reference.image) == b"png-bytes"
    assert reference.caption == "my cat"


def test_parse_reference_requires_path() -> None:
    with pytest.raises(ValueError):
        parse_reference("scene=")


def test_status_without_saved_queue(tmp_path: Path, capsys) -> None:
    exit_code = main(["--state-dir", str(tmp_path), "status"])

    assert exit_code == 1
    assert "No saved queue found" in capsys.readouterr().out


def test_edit_arguments(tmp_path: Path) -> None:
    args = parse_args(["--state-dir", str(tmp_path), "edit", "--id", "img_1", "--prompt", "a heron", "--regenerate"])

    assert args.command == "edit"
    assert args.item_id == "img_1"
    assert args.prompt == "a heron"
    assert args.regenerate
    assert args.cookie == ""


def test_edit_regenerate_requires_cookie(tmp_path: Path, capsys) -> None:
    (tmp_path / "queue.json").write_text(
        '{"items": [{"id": "img_1", "prompt": "a", "status": "completed"}]}', encoding="utf-8"
    )

    exit_code = main(["--state-dir", str(tmp_path), "edit", "--id", "img_1", "--prompt", "b", "--regenerate"])

    assert exit_code == 1
    assert "cookie is required" in capsys.readouterr().out
