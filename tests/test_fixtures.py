import json

import pytest

from loadsim.errors import FixtureLoadError
from loadsim.fixtures import Fixture, build_records, load_fixture


def _write(path, payload):
    path.write_text(json.dumps(payload), encoding="utf-8")


def test_load_directory_pairs_users_with_tokens(tmp_path):
    _write(tmp_path / "users.json", [{"id": "u1"}, {"id": "u2"}, {"userId": "u3"}])
    _write(tmp_path / "tokens.json", ["t1", {"token": "t2"}])
    _write(tmp_path / "challenges.json", {"challenges": [{"challengeId": "c1", "goals": []}]})

    fixture = load_fixture(tmp_path)

    assert len(fixture) == 3
    assert [fixture.get(i).token for i in range(3)] == ["t1", "t2", "t1"]
    assert fixture.get(2).user_id == "u3"
    assert fixture.seed("challenges")[0]["challengeId"] == "c1"


def test_load_single_file(tmp_path):
    source = tmp_path / "fixture.json"
    _write(source, {"users": [{"id": "u1"}], "tokens": ["t1"], "seeds": {"levels": [1, 2]}})

    fixture = load_fixture(source)

    assert dict(fixture.seeds) == {"levels": (1, 2)}
    assert fixture.get(0).user_id == "u1"
    assert fixture.seed("levels") == (1, 2)


def test_index_wraps_around(fixture):
    size = len(fixture)
    assert fixture.get(size + 1) == fixture.get(1)
    assert fixture.get(-1) == fixture.get(size - 1)


def test_records_are_read_only(fixture):
    record = fixture.get(0)
    with pytest.raises(TypeError):
        record.attributes["id"] = "changed"
    with pytest.raises(TypeError):
        fixture.seeds["new"] = ()


@pytest.mark.parametrize(
    "users, tokens",
    [
        ([], ["t"]),
        ([{"id": "u"}], []),
        ([{"name": "no id"}], ["t"]),
        (["not an object"], ["t"]),
        ([{"id": "u"}], [42]),
    ],
)
def test_malformed_records_raise(users, tokens):
    with pytest.raises(FixtureLoadError):
        build_records(users, tokens)


def test_missing_source_raises(tmp_path):
    with pytest.raises(FixtureLoadError):
        load_fixture(tmp_path / "nowhere")


def test_missing_tokens_file_raises(tmp_path):
    _write(tmp_path / "users.json", [{"id": "u1"}])
    with pytest.raises(FixtureLoadError):
        load_fixture(tmp_path)


def test_unparseable_json_raises(tmp_path):
    source = tmp_path / "fixture.json"
    source.write_text("{not json", encoding="utf-8")
    with pytest.raises(FixtureLoadError):
        load_fixture(source)


def test_empty_fixture_is_rejected():
    with pytest.raises(FixtureLoadError):
        Fixture([])
