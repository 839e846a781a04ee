from sheetquery.utils.column_mapping import (
    best_fuzzy_header,
    column_letter,
    dominant_script,
    find_header_index,
    find_keyword_indices,
    fuzzy_ratio,
    is_generic_header,
    normalize_colname,
    scripts_compatible,
    term_in_tokens,
    tokenize,
)


def test_normalize():
    assert normalize_colname("Customer ID") == "customerid"
    assert normalize_colname("Margin_Net") == "marginnet"
    assert normalize_colname("  Spaced  ") == "spaced"
    assert normalize_colname(123) == "123"
    assert normalize_colname("%PlazoConsumido") == "plazoconsumido"
    assert normalize_colname("ชื่อ ผู้ขาย") == "ชื่อผู้ขาย"
    assert normalize_colname(None) == ""


def test_column_letters():
    assert column_letter(0) == "A"
    assert column_letter(25) == "Z"
    assert column_letter(26) == "AA"
    assert column_letter(701) == "ZZ"


def test_generic_headers():
    for name in ["", None, "Column 3", "Unnamed: 2", "field_7", "B", "12"]:
        assert is_generic_header(name), name
    for name in ["ID", "Email", "ผู้ขาย", "Amount 2024"]:
        assert not is_generic_header(name), name


def test_scripts():
    assert dominant_script("Vendor") == "latin"
    assert dominant_script("ผู้ขาย") == "thai"
    assert dominant_script("1234") is None
    assert not scripts_compatible("vendor", "ผู้ขาย")
    assert scripts_compatible("vendor", "2024")


def test_fuzzy_ratio_uses_normalized_names():
    assert fuzzy_ratio("Customer_Name", "customer name") == 1.0
    assert fuzzy_ratio("Revenue", "Revenues") > 0.8
    assert fuzzy_ratio("", "x") == 0.0


def test_find_header_index_prefers_equality_then_containment():
    headers = ["Invoice Amount", "Amount", "Vendor Name"]
    assert find_header_index(headers, "amount") == 1
    assert find_header_index(headers, "vendor") == 2
    assert find_header_index(headers, "amount", exclude=[1]) == 0
    assert find_header_index(headers, "qty") is None


def test_keyword_indices_and_fuzzy_resolution():
    headers = ["Vendor", "Net Amount", "Total", "Notes"]
    assert find_keyword_indices(headers, ["amount", "total"]) == [1, 2]
    assert find_keyword_indices(headers, ["amount", "total"], exclude=[2]) == [1]
    assert best_fuzzy_header(["Vendr", "Amount"], ["vendor"]) == 0
    assert best_fuzzy_header(["ผู้ขาย", "Amount"], ["vendor"]) is None


def test_tokenize_and_term_matching():
    tokens = tokenize("Vendor_Payments / Q1")
    assert tokens == ["vendor", "payments", "q1"]
    assert term_in_tokens("payment", tokens)
    assert term_in_tokens("vendors", tokens)
    assert not term_in_tokens("pay", tokens)
    assert term_in_tokens("ผู้ขาย", tokenize("ชื่อผู้ขาย"))
