from __future__ import annotations

import json

import pytest

from bulkgen.client_queue import build_queue_items
from bulkgen.exceptions import PromptFileError
from bulkgen.prompt_files import parse_prompt_file


def test_text_file_one_prompt_per_line() -> None:
    content = b"a cat\n\n# comment\n  a dog  \n"

    assert parse_prompt_file("prompts.txt", content) == ["a cat", "a dog"]


def test_json_list_of_strings_and_records() -> None:
    content = json.dumps(["a cat", {"prompt": "a dog"}, {"text": "a bird"}, {"other": 1}]).encode()

    assert parse_prompt_file("prompts.json", content) == ["a cat", "a dog", "a bird"]


def test_json_object_with_prompts_key() -> None:
    content = json.dumps({"prompts": ["one", "two"]}).encode()

    assert parse_prompt_file("prompts.json", content) == ["one", "two"]


def test_invalid_json_falls_back_to_lines() -> None:
    assert parse_prompt_file("prompts.json", b"first\nsecond") == ["first", "second"]


def test_csv_first_column_without_header() -> None:
    content = b'"a cat, sitting",x\na dog,y\n'

    assert parse_prompt_file("prompts.csv", content) == ["a cat, sitting", "a dog"]


def test_non_utf8_rejected() -> None:
    with pytest.raises(PromptFileError):
        parse_prompt_file("prompts.txt", b"\xff\xfe\x00bad")


def test_queue_items_expand_prompts_count_and_prefix() -> None:
    items = build_queue_items(["cat", " ", "dog"], count=2, style_prefix="oil painting,")

    assert [item.prompt for item in items] == [
        "oil painting, cat",
        "oil painting, cat",
        "oil painting, dog",
        "oil painting, dog",
    ]
    assert len({item.id for item in items}) == 4
