from app.utils import coerce_float, coerce_int, normalize_title, safe_filename, slugify, stable_dumps


def test_slugify_basic():
    assert slugify("Late Night Thrills!") == "late-night-thrills"


def test_normalize_title_ignores_accents_and_punctuation():
    assert normalize_title("Amélie") == normalize_title("AMELIE!")
    assert normalize_title(None) == ""


def test_coercion_helpers():
    assert coerce_int("42") == 42
    assert coerce_int(True) is None
    assert coerce_int("n/a") is None
    assert coerce_float("87%") == 87.0
    assert coerce_float(None) is None


def test_stable_dumps_sorts_keys():
    assert stable_dumps({"b": 1, "a": [2]}) == '{"a":[2],"b":1}'


def test_safe_filename():
    assert safe_filename("/abc/def.jpg") == "_abc_def_jpg"
