import threading
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from dnsbridge.resolver import CommandResult
from dnsbridge.rules import (
    BlockRule,
    CategorySet,
    RuleBundle,
    RuleBundleError,
    RuleCompiler,
    WhitelistEntry,
    compile_rules,
    normalize_domain,
    render_rule_file,
)


def _directives(text):
    return [line for line in text.splitlines() if line.startswith("local-zone:")]


class TestNormalize:
    def test_wildcard_stripped_once(self):
        assert normalize_domain("*.Ads.Example.com ") == "ads.example.com"
        assert normalize_domain("*.*.x.com") == "*.x.com"

    def test_plain(self):
        assert normalize_domain("Tracker.NET") == "tracker.net"

    def test_root_dot_stripped(self):
        assert normalize_domain("ads.example.com.") == "ads.example.com"
        assert normalize_domain("*.Ads.Example.COM.") == "ads.example.com"


class TestRuleBundle:
    def test_from_dict(self):
        bundle = RuleBundle.from_dict({
            "blacklist": [{"domain": "a.com", "enabled": True, "category": "ads"}],
            "whitelist": [{"domain": "b.com", "enabled": False}],
            "categories": [{"name": "social", "enabled": True, "domains": ["fb.com"]}],
        })
        assert bundle.blacklist == [BlockRule("a.com", True, "ads")]
        assert bundle.whitelist == [WhitelistEntry("b.com", False)]
        assert bundle.categories == [CategorySet("social", True, ["fb.com"])]

    def test_missing_lists_default_empty(self):
        bundle = RuleBundle.from_dict({})
        assert bundle.blacklist == []
        assert bundle.whitelist == []
        assert bundle.categories == []

    def test_enabled_defaults_true(self):
        bundle = RuleBundle.from_dict({"blacklist": [{"domain": "a.com"}]})
        assert bundle.blacklist[0].enabled is True

    def test_rejects_non_object(self):
        with pytest.raises(RuleBundleError):
            RuleBundle.from_dict(["a.com"])

    def test_rejects_non_list(self):
        with pytest.raises(RuleBundleError):
            RuleBundle.from_dict({"blacklist": "a.com"})

    def test_rejects_entry_without_domain(self):
        with pytest.raises(RuleBundleError):
            RuleBundle.from_dict({"blacklist": [{"enabled": True}]})

    def test_error_is_value_error(self):
        assert issubclass(RuleBundleError, ValueError)


class TestCompileRules:
    def test_merges_blacklist_and_enabled_categories(self):
        bundle = RuleBundle(
            blacklist=[BlockRule("a.com"), BlockRule("off.com", enabled=False)],
            categories=[
                CategorySet("ads", True, ["*.ads.net", "b.com"]),
                CategorySet("social", False, ["fb.com"]),
            ],
        )
        blocked, rejected = compile_rules(bundle)
        assert blocked == {"a.com", "ads.net", "b.com"}
        assert rejected == []

    def test_whitelist_precedence(self):
        bundle = RuleBundle(
            blacklist=[BlockRule("x.com"), BlockRule("X.com"), BlockRule("*.x.com")],
            whitelist=[WhitelistEntry("x.com")],
            categories=[CategorySet("c", True, ["x.com", "y.com"])],
        )
        blocked, _ = compile_rules(bundle)
        assert "x.com" not in blocked
        assert blocked == {"y.com"}

    def test_disabled_whitelist_entry_ignored(self):
        bundle = RuleBundle(
            blacklist=[BlockRule("x.com")],
            whitelist=[WhitelistEntry("x.com", enabled=False)],
        )
        blocked, _ = compile_rules(bundle)
        assert blocked == {"x.com"}

    def test_invalid_patterns_rejected(self):
        bundle = RuleBundle(blacklist=[
            BlockRule('evil.com" always_transparent'),
            BlockRule("ok.com"),
            BlockRule("   "),
        ])
        blocked, rejected = compile_rules(bundle)
        assert blocked == {"ok.com"}
        assert rejected == ['evil.com" always_transparent']

    def test_fully_qualified_patterns(self):
        bundle = RuleBundle(
            blacklist=[BlockRule("ads.example.com."), BlockRule("keep.com")],
            whitelist=[WhitelistEntry("keep.com.")],
        )
        blocked, rejected = compile_rules(bundle)
        assert blocked == {"ads.example.com"}
        assert rejected == []

    def test_duplicates_collapse(self):
        bundle = RuleBundle(blacklist=[BlockRule("a.com"), BlockRule("A.COM")])
        blocked, _ = compile_rules(bundle)
        assert blocked == {"a.com"}


class TestRenderRuleFile:
    def test_header_and_sorted_directives(self):
        text = render_rule_file({"b.com", "a.com"}, datetime(2026, 2, 19, 8, 0, tzinfo=timezone.utc))
        lines = text.splitlines()
        assert lines[0] == "# dnsbridge managed rules - do not edit manually"
        assert lines[1] == "# Generated: 2026-02-19T08:00:00Z"
        assert _directives(text) == [
            'local-zone: "a.com" always_refuse',
            'local-zone: "b.com" always_refuse',
        ]

    def test_empty(self):
        assert _directives(render_rule_file(set())) == []


class TestRuleCompiler:
    def setup_method(self):
        self.control = MagicMock()
        self.control.reload.return_value = CommandResult(0, "ok", "")

    def test_apply_writes_and_reloads(self, tmp_path):
        rules_file = tmp_path / "local.d" / "dnsguard-blacklist.conf"
        compiler = RuleCompiler(rules_file, self.control)
        result = compiler.apply(RuleBundle(blacklist=[BlockRule("a.com"), BlockRule("b.com")]))
        assert result == {"ok": True, "message": "Applied 2 blocked domains, Unbound reloaded"}
        assert len(_directives(rules_file.read_text())) == 2
        self.control.reload.assert_called_once()

    def test_regeneration_is_total(self, tmp_path):
        rules_file = tmp_path / "rules.conf"
        compiler = RuleCompiler(rules_file, self.control)
        compiler.apply(RuleBundle(blacklist=[BlockRule("a.com")]))
        compiler.apply(RuleBundle())
        assert _directives(rules_file.read_text()) == []
        assert rules_file.read_text().startswith("# dnsbridge managed rules")

    def test_reports_skipped_patterns(self, tmp_path):
        compiler = RuleCompiler(tmp_path / "rules.conf", self.control)
        result = compiler.apply(RuleBundle(blacklist=[BlockRule("a.com"), BlockRule("bad domain")]))
        assert result["ok"] is True
        assert "(1 invalid patterns skipped)" in result["message"]

    def test_reload_failure(self, tmp_path):
        self.control.reload.return_value = CommandResult(1, "", "error: connect: Connection refused")
        rules_file = tmp_path / "rules.conf"
        result = RuleCompiler(rules_file, self.control).apply(RuleBundle(blacklist=[BlockRule("a.com")]))
        assert result["ok"] is False
        assert result["message"] == (
            "Rules written (1 domains) but reload failed: error: connect: Connection refused"
        )
        assert rules_file.exists()

    def test_write_failure(self, tmp_path):
        compiler = RuleCompiler(tmp_path / "rules.conf", self.control)
        with patch("dnsbridge.rules._atomic_write_text", side_effect=PermissionError("denied")):
            result = compiler.apply(RuleBundle(blacklist=[BlockRule("a.com")]))
        assert result == {"ok": False, "message": "Rules error: denied"}
        self.control.reload.assert_not_called()

    def test_file_mode_and_no_temp_leftovers(self, tmp_path):
        rules_file = tmp_path / "rules.conf"
        RuleCompiler(rules_file, self.control).apply(RuleBundle(blacklist=[BlockRule("a.com")]))
        assert rules_file.stat().st_mode & 0o777 == 0o644
        assert [p.name for p in tmp_path.iterdir()] == ["rules.conf"]

    def test_concurrent_applies_serialized(self, tmp_path):
        active = []
        overlap = []

        def slow_reload():
            active.append(1)
            if len(active) > 1:
                overlap.append(True)
            threading.Event().wait(0.05)
            active.pop()
            return CommandResult(0, "", "")

        self.control.reload.side_effect = slow_reload
        compiler = RuleCompiler(tmp_path / "rules.conf", self.control)
        threads = [
            threading.Thread(target=compiler.apply, args=(RuleBundle(blacklist=[BlockRule(f"d{i}.com")]),))
            for i in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert overlap == []
        assert self.control.reload.call_count == 4
