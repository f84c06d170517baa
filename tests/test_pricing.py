"""Tests for glob route pricing."""

import pytest

from lightning_gateway.pricing import RouteRule, match_path, parse_rules, resolve_price


class TestMatchPath:
    def test_single_star_matches_one_segment(self):
        assert match_path("/free/*", "/free/x")
        assert not match_path("/free/*", "/free/x/y")
        assert not match_path("/free/*", "/other/x")

    def test_double_star_matches_any_depth(self):
        assert match_path("/**", "/")
        assert match_path("/**", "/anything/nested/deep")
        assert match_path("/api/**", "/api")
        assert match_path("/api/**", "/api/v1/users")
        assert not match_path("/api/**", "/apix")

    def test_whole_path_must_match(self):
        assert not match_path("/users", "/users/1")
        assert not match_path("/users", "/v1/users")
        assert match_path("/users", "/users")

    def test_star_inside_segment(self):
        assert match_path("/files/*.json", "/files/data.json")
        assert not match_path("/files/*.json", "/files/data.csv")

    def test_regex_characters_are_literal(self):
        assert match_path("/v1.0/(x)", "/v1.0/(x)")
        assert not match_path("/v1.0/x", "/v1x0/x")

    def test_middle_wildcard(self):
        assert match_path("/users/*/posts", "/users/42/posts")
        assert not match_path("/users/*/posts", "/users/42/43/posts")


class TestResolvePrice:
    RULES = [
        {"pattern": "/free/*", "price": 0},
        {"pattern": "/**", "price": 5},
    ]

    def test_first_match_wins(self):
        assert resolve_price(self.RULES, "/free/x", 10) == 0
        assert resolve_price(self.RULES, "/anything/nested", 5) == 5

    def test_declared_order_is_respected(self):
        reversed_rules = list(reversed(self.RULES))
        # The catch-all now shadows the free tier
        assert resolve_price(reversed_rules, "/free/x", 10) == 5

    def test_default_when_no_rule_matches(self):
        rules = [{"pattern": "/premium/**", "price": 50}]
        assert resolve_price(rules, "/basic", 10) == 10

    def test_default_without_rules(self):
        assert resolve_price(None, "/x", 7) == 7
        assert resolve_price([], "/x", 7) == 7

    def test_accepts_json_string(self):
        assert resolve_price('[{"pattern": "/a", "price": 3}]', "/a", 1) == 3

    def test_accepts_route_rules(self):
        rules = (RouteRule("/a/*", 2), RouteRule("/**", 9))
        assert resolve_price(rules, "/a/b", 1) == 2
        assert resolve_price(rules, "/c", 1) == 9


class TestParseRules:
    def test_keeps_description(self):
        rules = parse_rules([{"pattern": "/x", "price": 1, "description": "X"}])
        assert rules == [RouteRule("/x", 1, "X")]

    @pytest.mark.parametrize("raw", [
        [{"pattern": "/x", "price": -1}],
        [{"pattern": "/x", "price": "5"}],
        [{"pattern": "/x", "price": True}],
        [{"pattern": "", "price": 1}],
        [{"pattern": 5, "price": 1}],
        [{"price": 1}],
        ["/x"],
        {"pattern": "/x", "price": 1},
    ])
    def test_rejects_malformed(self, raw):
        with pytest.raises(ValueError):
            parse_rules(raw)
