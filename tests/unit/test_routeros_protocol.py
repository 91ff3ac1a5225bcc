"""Tests for RouterOS sentence building and reply decoding."""

import pytest

from mikrops.infra.routeros.exceptions import RouterOSError
from mikrops.infra.routeros.protocol import build_command, format_value, parse_sentence


def test_parse_sentence_attributes_and_tag():
    sentence = parse_sentence(["!re", "=.id=*1A", "=address=10.0.0.2", "=comment=a=b", ".tag=7"])

    assert sentence.reply == "!re"
    assert sentence.tag == "7"
    assert sentence.attributes == {".id": "*1A", "address": "10.0.0.2", "comment": "a=b"}
    assert not sentence.is_terminal


def test_parse_fatal_bare_message():
    sentence = parse_sentence(["!fatal", "session terminated on request"])
    assert sentence.is_terminal
    assert sentence.attributes["message"] == "session terminated on request"


def test_parse_empty_sentence_rejected():
    with pytest.raises(RouterOSError):
        parse_sentence([])


def test_build_command_renders_args_query_and_tag():
    words = build_command(
        "/ppp/secret/add",
        {"name": "alice", "disabled": False, "local-address": None},
        query={".id": "*1"},
        tag="4",
    )
    assert words == ["/ppp/secret/add", "=name=alice", "=disabled=no", "?.id=*1", ".tag=4"]


def test_build_command_requires_absolute_path():
    with pytest.raises(ValueError):
        build_command("ppp/secret/print")


def test_format_value_booleans():
    assert format_value(True) == "yes"
    assert format_value(3) == "3"
