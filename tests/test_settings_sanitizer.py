import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from backend.settings import (
    DEFAULT_CONFIG,
    MindmapSettings,
    _effective_api_routes,
    _sanitize_config_values,
    load_config,
    save_config,
)


class TestSettingsSanitizer(unittest.TestCase):
    def test_defaults(self):
        cfg = _sanitize_config_values({}, base=DEFAULT_CONFIG)
        self.assertTrue(cfg["mindmap_enabled"])
        self.assertEqual(cfg["mindmap_update_interval_ms"], 60000)
        self.assertEqual(cfg["mindmap_retry_count"], 2)
        self.assertEqual(cfg["mindmap_retry_delay_ms"], 2000)
        self.assertEqual(cfg["mindmap_max_nodes"], 200)
        self.assertEqual(cfg["mindmap_merge_context_turns"], 50)

    def test_coercion_and_clamping(self):
        cfg = _sanitize_config_values(
            {
                "mindmap_enabled": "false",
                "mindmap_update_interval_ms": "10",
                "mindmap_retry_count": "99",
                "mindmap_retry_delay_ms": -5,
                "mindmap_max_nodes": "150.7",
                "mindmap_merge_context_turns": "abc",
                "verbose_logging": "yes",
            },
            base=DEFAULT_CONFIG,
        )
        self.assertFalse(cfg["mindmap_enabled"])
        self.assertEqual(cfg["mindmap_update_interval_ms"], 1000)
        self.assertEqual(cfg["mindmap_retry_count"], 10)
        self.assertEqual(cfg["mindmap_retry_delay_ms"], 0)
        self.assertEqual(cfg["mindmap_max_nodes"], 150)
        self.assertEqual(cfg["mindmap_merge_context_turns"], 50)
        self.assertTrue(cfg["verbose_logging"])

    def test_unknown_keys_are_dropped(self):
        cfg = _sanitize_config_values({"whisper_model_size": "tiny"}, base=DEFAULT_CONFIG)
        self.assertNotIn("whisper_model_size", cfg)

    def test_mindmap_settings_from_config(self):
        settings = MindmapSettings.from_config({"mindmap_max_nodes": 5, "mindmap_retry_delay_ms": "250"})
        self.assertEqual(settings.max_nodes, 10)
        self.assertEqual(settings.retry_delay_ms, 250)
        self.assertEqual(settings.update_interval_ms, 60000)

    def test_api_routes_are_sanitized(self):
        cfg = _sanitize_config_values(
            {
                "api_fallback_enabled": "false",
                "api_routes": [
                    {"provider": "openai", "base_url": "https://api.openai.com/v1", "model": "gpt-4o-mini", "api_key": "k1"},
                    {"provider": "custom", "base_url": "", "model": "x", "api_key": "k2"},
                    "bad",
                ],
            },
            base=DEFAULT_CONFIG,
        )
        self.assertFalse(cfg["api_fallback_enabled"])
        self.assertEqual(len(cfg["api_routes"]), 1)
        self.assertEqual(cfg["api_routes"][0]["provider"], "openai")

    def test_effective_api_routes_uses_env_fallback(self):
        cfg = _sanitize_config_values(
            {
                "api_provider": "openrouter",
                "api_key": "",
                "base_url": "https://openrouter.ai/api/v1",
                "model": "openai/gpt-4o-mini",
                "api_routes": [
                    {"provider": "openai", "api_key": "", "base_url": "https://api.openai.com/v1", "model": "gpt-4o-mini"},
                ],
            },
            base=DEFAULT_CONFIG,
        )
        with patch.dict("os.environ", {"OPENROUTER_API_KEY": "or-key", "OPENAI_API_KEY": "oa-key"}, clear=False):
            routes = _effective_api_routes(cfg)
        self.assertEqual(len(routes), 2)
        self.assertEqual(routes[0]["provider"], "openrouter")
        self.assertEqual(routes[0]["api_key"], "or-key")
        self.assertEqual(routes[1]["provider"], "openai")
        self.assertEqual(routes[1]["api_key"], "oa-key")

    def test_routes_without_keys_are_skipped(self):
        cfg = _sanitize_config_values({"api_provider": "custom", "base_url": "http://localhost:1234/v1"}, base=DEFAULT_CONFIG)
        self.assertEqual(_effective_api_routes(cfg), [])

    def test_provider_aliases_and_inference(self):
        cfg = _sanitize_config_values(
            {
                "api_provider": "google",
                "base_url": "https://generativelanguage.googleapis.com/v1beta/openai",
            },
            base=DEFAULT_CONFIG,
        )
        self.assertEqual(cfg["api_provider"], "gemini")

        cfg2 = _sanitize_config_values(
            {"api_provider": "custom", "base_url": "https://openrouter.ai/api/v1"},
            base=DEFAULT_CONFIG,
        )
        self.assertEqual(cfg2["api_provider"], "openrouter")


class TestSettingsFile(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "settings.json"

    def tearDown(self):
        self._tmp.cleanup()

    def test_save_then_load(self):
        save_config({**DEFAULT_CONFIG, "mindmap_max_nodes": 300}, self.path)
        self.assertEqual(json.loads(self.path.read_text(encoding="utf-8"))["mindmap_max_nodes"], 300)
        self.assertEqual(load_config(self.path, environ={})["mindmap_max_nodes"], 300)

    def test_environment_overrides_file(self):
        self.path.write_text(json.dumps({"mindmap_update_interval_ms": 5000}), encoding="utf-8")
        cfg = load_config(
            self.path,
            environ={"MINDMAP_UPDATE_INTERVAL_MS": "2500", "MINDMAP_MAX_NODES": " 40 ", "MINDMAP_RETRY_COUNT": ""},
        )
        self.assertEqual(cfg["mindmap_update_interval_ms"], 2500)
        self.assertEqual(cfg["mindmap_max_nodes"], 40)
        self.assertEqual(cfg["mindmap_retry_count"], 2)

    def test_corrupt_file_falls_back_to_defaults(self):
        self.path.write_text("{not json", encoding="utf-8")
        with self.assertLogs("backend.settings", level="ERROR"):
            cfg = load_config(self.path, environ={})
        self.assertEqual(cfg, _sanitize_config_values({}, base=DEFAULT_CONFIG))


if __name__ == "__main__":
    unittest.main()
