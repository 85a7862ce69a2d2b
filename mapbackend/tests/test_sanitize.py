import pytest

from mapbackend.security.sanitize import (
    MAX_TEXT_LENGTH,
    MaliciousInputError,
    MaliciousSQLError,
    contains_markup,
    sanitize_data,
    sanitize_sql,
    sanitize_string,
)


@pytest.mark.parametrize(
    "payload",
    [
        "<script>alert(1)</script>",
        "<iframe src=x></iframe>",
        "javascript:alert(1)",
        "VBScript:msgbox",
        "x onload=steal()",
        "<img src=x>",
        "&lt;b&gt;",
        "width: expression(alert(1))",
        "background: url(evil.png)",
        "@import 'x.css'",
    ],
)
def test_free_text_rejects_markup_signatures(payload):
    with pytest.raises(MaliciousInputError) as ei:
        sanitize_string(payload)
    assert str(ei.value) == "Potentially malicious input detected"


def test_free_text_trims_and_truncates():
    assert sanitize_string("  Kafe Merkez  ") == "Kafe Merkez"
    assert len(sanitize_string("a" * (MAX_TEXT_LENGTH + 50))) == MAX_TEXT_LENGTH


def test_free_text_keeps_plain_punctuation():
    assert sanitize_string("Atatürk Cd. No:12/3, Çankaya") == "Atatürk Cd. No:12/3, Çankaya"
    assert sanitize_string("%kafe%") == "%kafe%"


def test_free_text_rejects_non_strings():
    with pytest.raises(TypeError):
        sanitize_string(42)


@pytest.mark.parametrize(
    "ident",
    [
        "name; DROP TABLE users",
        "id' OR '1'='1",
        "union",
        "a--b",
        "/* x */",
        "xp_cmdshell",
        "sp_who",
        'col"',
        "`col`",
        "cast",
    ],
)
def test_identifier_rejects_sql_signatures(ident):
    with pytest.raises(MaliciousSQLError) as ei:
        sanitize_sql(ident)
    assert str(ei.value) == "Potentially malicious SQL input detected"


def test_identifier_accepts_plain_columns_and_select_clauses():
    assert sanitize_sql(" created_at ") == "created_at"
    assert sanitize_sql("order_id") == "order_id"
    assert sanitize_sql("*, main_categories(id,name)") == "*, main_categories(id,name)"


def test_sanitize_data_walks_keys_and_leaves():
    out = sanitize_data({" name ": " Kafe ", "tags": ["a ", {"k": " v "}], "n": 3, "ok": True})
    assert out == {"name": "Kafe", "tags": ["a", {"k": "v"}], "n": 3, "ok": True}

    with pytest.raises(MaliciousInputError):
        sanitize_data({"rows": [{"note": "<script>x</script>"}]})
    with pytest.raises(MaliciousInputError):
        sanitize_data({"onclick=": "x"})


def test_contains_markup():
    assert contains_markup("<b>")
    assert not contains_markup("plain user")
