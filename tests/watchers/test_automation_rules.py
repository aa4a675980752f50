import json

from screencap.watchers.automation_rules import (
    AutomationRule,
    AutomationRules,
    evaluate_automation_policy,
)


class TestEvaluateAutomationPolicy:
    """自動化ルール評価のテスト"""

    def test_defaults(self):
        """ルールが無ければ全て allow"""
        policy = evaluate_automation_policy("com.apple.Terminal", None, None)

        assert policy.capture == "allow"
        assert policy.llm == "allow"
        assert policy.overrides == {}

    def test_adult_host_defaults_to_leisure(self):
        """成人向けホストは Leisure に上書きされる"""
        policy = evaluate_automation_policy("com.google.Chrome", "nsfw.example.com", None)

        assert policy.overrides == {"category": "Leisure"}

    def test_app_rule_applies(self):
        """アプリのルールが適用される"""
        rules = AutomationRules(apps={"com.spotify.client": AutomationRule(capture="skip")})

        policy = evaluate_automation_policy("com.spotify.client", None, rules)

        assert policy.capture == "skip"
        assert policy.llm == "allow"

    def test_host_rule_overrides_app_rule(self):
        """ホストのルールがアプリのルールより後に重なる"""
        # Given: アプリは Work、ホストは Leisure かつ LLM skip
        rules = AutomationRules(
            apps={"com.google.Chrome": AutomationRule(category="Work", tags=["browser"])},
            hosts={"youtube.com": AutomationRule(category="Leisure", llm="skip")},
        )

        # When
        policy = evaluate_automation_policy("com.google.Chrome", "youtube.com", rules)

        # Then: 各フィールドは後勝ち、未指定は残る
        assert policy.capture == "allow"
        assert policy.llm == "skip"
        assert policy.overrides == {"category": "Leisure", "tags": ["browser"]}


class TestAutomationRulesLoad:
    """ルールファイル読み込みのテスト"""

    def test_load_from_file(self, tmp_path):
        """JSON ファイルから読み込める"""
        path = tmp_path / "rules.json"
        path.write_text(
            json.dumps(
                {
                    "apps": {"com.spotify.client": {"capture": "skip"}},
                    "hosts": {"github.com": {"category": "Work", "project": "screencap"}},
                }
            ),
            encoding="utf-8",
        )

        rules = AutomationRules.load(path)

        assert rules.apps["com.spotify.client"].capture == "skip"
        assert rules.hosts["github.com"].project == "screencap"

    def test_missing_file(self, tmp_path):
        """ファイルが無ければ空"""
        rules = AutomationRules.load(tmp_path / "missing.json")

        assert rules.apps == {}
        assert rules.hosts == {}

    def test_broken_file(self, tmp_path):
        """壊れた JSON は空として扱う"""
        path = tmp_path / "rules.json"
        path.write_text("{not json", encoding="utf-8")

        rules = AutomationRules.load(path)

        assert rules.apps == {}
