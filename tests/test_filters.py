from easybroker.filters import build_query_params, has_features, has_price_in_range, matches_filters, parse_filters


def test_parse_filters_is_lenient():
    filters = parse_filters(
        {
            "operation_type": "SALE",
            "min_price": "1500000",
            "max_price": "abc",
            "min_bedrooms": "nan",
            "updated_after": "2024-05-01T10:00:00Z",
            "updated_before": "not a date",
            "search[statuses][]": ["published", "available"],
            "property_types": "Casa, Departamento",
            "q": "  juriquilla ",
        }
    )
    assert filters.operation_type == "sale"
    assert filters.min_price == 1500000
    assert filters.max_price is None
    assert filters.min_bedrooms is None
    assert filters.updated_after == "2024-05-01"
    assert filters.updated_before is None
    assert filters.statuses == ["published", "available"]
    assert filters.property_types == ["Casa", "Departamento"]
    assert filters.q == "juriquilla"


def test_unknown_operation_type_dropped():
    assert parse_filters({"operation_type": "lease"}).operation_type is None


def test_build_query_params_uses_bracket_conventions():
    filters = parse_filters(
        {
            "operation_type": "rental",
            "min_price": "12000.0",
            "statuses": "available",
            "features": ["Alberca", "Jardín"],
            "locations": "Querétaro",
        }
    )
    params = build_query_params(filters)
    assert ("operation_type", "rental") in params
    assert ("min_price", "12000") in params
    assert ("search[statuses][]", "available") in params
    assert [v for k, v in params if k == "features[]"] == ["Alberca", "Jardín"]
    assert ("locations[]", "Querétaro") in params


def test_empty_query_builds_no_params():
    assert build_query_params(parse_filters({})) == []


def test_price_range_reads_amount_or_first_price():
    operations = [{"type": "sale", "prices": [{"amount": 2500000}]}, {"type": "rental", "amount": 18000}]
    assert has_price_in_range(operations, 10000, 20000)
    assert has_price_in_range(operations, 2000000, None)
    assert not has_price_in_range(operations, 3000000, None)
    assert has_price_in_range(None)


def test_has_features_is_case_insensitive():
    assert has_features("Casa con ALBERCA y jardín", ["alberca", "Jardín"])
    assert not has_features("Casa con jardín", ["alberca"])
    assert has_features(None, [])


def test_matches_filters_checks_price_and_listed_features():
    filters = parse_filters({"min_price": "1000000", "features": "alberca"})
    cheap = {"operations": [{"type": "sale", "amount": 900000}]}
    pool = {"operations": [{"type": "sale", "amount": 2000000}], "features": ["Alberca", "Jardín"]}
    no_pool = {"operations": [{"type": "sale", "amount": 2000000}], "features": ["Jardín"]}
    unlisted = {"operations": [{"type": "sale", "amount": 2000000}]}
    assert not matches_filters(cheap, filters)
    assert matches_filters(pool, filters)
    assert not matches_filters(no_pool, filters)
    assert matches_filters(unlisted, filters)
