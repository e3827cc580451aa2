from __future__ import annotations

import json

import pytest

from folioquote.main import _build_parser, load_tracked_symbols


def test_register_file_is_parsed(tmp_path) -> None:  # noqa: ANN001
    path = tmp_path / "holdings.json"
    path.write_text(json.dumps([{"symbol": "TCS.NS"}, {"symbol": "119551", "type": "mf"}]), encoding="utf-8")

    assert load_tracked_symbols(str(path)) == [("TCS.NS", "stock"), ("119551", "mf")]
    assert _build_parser().parse_args(["--register", str(path)]).register == str(path)


@pytest.mark.parametrize("content", [{"symbol": "TCS.NS"}, [{"type": "mf"}], ["TCS.NS"]])
def test_register_file_rejects_bad_shapes(tmp_path, content) -> None:  # noqa: ANN001
    path = tmp_path / "holdings.json"
    path.write_text(json.dumps(content), encoding="utf-8")

    with pytest.raises(ValueError):
        load_tracked_symbols(str(path))
