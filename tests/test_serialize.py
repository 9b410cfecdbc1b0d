import json

import pytest
import yaml

from parsley.parsley_datatypes import ParsleyDict
from parsley.parsley_pseudotypes import make_path, to_string
from parsley.parsley_serialize import CodecError, decode, detect_format, encode, to_native


@pytest.mark.parametrize("path, fmt", [
    ("data.json", "json"),
    ("a/b/CONF.YML", "yaml"),
    ("x.yaml", "yaml"),
    ("t.csv", "csv"),
    ("app.log", "lines"),
    ("notes.md", "text"),
    ("README", "text"),
    (".bashrc", "text"),
])
def test_detect_format(path, fmt):
    assert detect_format(path) == fmt


def test_decode_json_builds_dictionaries():
    value = decode(b'{"a": {"b": [1, 2.5, null, true]}}', "json")
    assert isinstance(value, ParsleyDict)
    assert value["a"]["b"] == [1, 2.5, None, True]


def test_decode_yaml_dates_become_datetimes():
    value = decode("when: 2024-01-15\n", "yaml")
    assert value["when"].type_name == "datetime"
    assert value["when"]["iso"] == "2024-01-15T00:00:00Z"


def test_decode_csv():
    rows = decode("a,b\n1,2\n", "csv")
    assert rows[0]["a"] == "1" and rows[0]["b"] == "2"
    assert decode("a,b\n1,2\n", "csv-noheader") == [["a", "b"], ["1", "2"]]


def test_decode_lines_drops_trailing_newline():
    assert decode("a\nb\n", "lines") == ["a", "b"]
    assert decode("a\n\nb", "lines") == ["a", "", "b"]


def test_decode_bytes():
    assert decode(b"\x00\xff", "bytes") == [0, 255]


@pytest.mark.parametrize("data, fmt", [("{oops", "json"), ("a: [1", "yaml"), ("x", "nope")])
def test_decode_errors(data, fmt):
    with pytest.raises(CodecError):
        decode(data, fmt)


def test_to_native_skips_internal_keys_and_renders_pseudo_types():
    d = ParsleyDict({"__type": "thing", "name": "x"})
    assert to_native(d) == {"name": "x"}
    assert to_native(make_path("./a/b"), render=to_string) == "./a/b"


def test_encode_json_and_yaml():
    d = ParsleyDict({"a": 1, "b": [True, None]})
    assert json.loads(encode(d, "json")) == {"a": 1, "b": [True, None]}
    assert yaml.safe_load(encode(d, "yaml")) == {"a": 1, "b": [True, None]}


def test_encode_csv_unions_headers():
    rows = [ParsleyDict({"a": 1}), ParsleyDict({"a": 2, "b": True})]
    assert encode(rows, "csv") == "a,b\n1,\n2,true\n"
    assert encode([[1, None], ["x", False]], "csv-noheader") == "1,\nx,false\n"


def test_encode_lines_and_text():
    assert encode(["a", 1], "lines") == "a\n1\n"
    assert encode([], "lines") == ""
    assert encode("hi", "text") == "hi"


def test_encode_bytes():
    assert encode([104, 105], "bytes") == b"hi"
    with pytest.raises(CodecError):
        encode([300], "bytes")
    with pytest.raises(CodecError):
        encode("x", "bytes")


def test_encode_csv_requires_rows():
    with pytest.raises(CodecError):
        encode("x", "csv")
