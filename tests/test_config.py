import json
import os
import tempfile
import unittest
from io import StringIO
from pathlib import Path
from unittest import mock

from rich.console import Console

from perplexity_cli.config import CliPaths, CliSettings, ConfigError, ConfigManager

ENV_KEYS = (
    "PERPLEXITY_API_KEY",
    "PERPLEXITY_MODEL",
    "PERPLEXITY_BASE_URL",
    "PERPLEXITY_TIMEOUT_MS",
    "PERPLEXITY_PASTE_MODE",
    "PERPLEXITY_DEBUG",
)


def clean_env(**values: str) -> dict:
    env = {key: value for key, value in os.environ.items() if key not in ENV_KEYS}
    env.update(values)
    return env


class ConfigTests(unittest.TestCase):
    def make_manager(self, root: Path):  # type: ignore[no-untyped-def]
        stream = StringIO()
        console = Console(file=stream, force_terminal=False, color_system=None)
        return ConfigManager(CliPaths(root), console=console), stream

    def test_defaults_without_file_or_env(self) -> None:
        with tempfile.TemporaryDirectory() as tmp, mock.patch.dict(os.environ, clean_env(), clear=True):
            manager, _ = self.make_manager(Path(tmp))
            settings = manager.load_settings()

        self.assertEqual(settings, CliSettings())
        self.assertEqual(settings.model, "sonar-pro")
        self.assertEqual(settings.base_url, "https://api.perplexity.ai")
        self.assertEqual(settings.paste_mode, "bracketed")

    def test_env_overrides_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            (root / "config.json").write_text(
                json.dumps({"api_key": "file-key", "model": "sonar", "markdown": False, "debounce_ms": 25}),
                encoding="utf-8",
            )
            env = clean_env(
                PERPLEXITY_API_KEY="env-key",
                PERPLEXITY_BASE_URL="https://proxy.example/",
                PERPLEXITY_TIMEOUT_MS="1500",
                PERPLEXITY_PASTE_MODE="Debounce",
            )
            with mock.patch.dict(os.environ, env, clear=True):
                manager, _ = self.make_manager(root)
                settings = manager.load_settings()

        self.assertEqual(settings.api_key, "env-key")
        self.assertEqual(settings.model, "sonar")
        self.assertEqual(settings.base_url, "https://proxy.example")
        self.assertEqual(settings.timeout_s, 1.5)
        self.assertEqual(settings.paste_mode, "debounce")
        self.assertEqual(settings.debounce_ms, 25)
        self.assertFalse(settings.markdown)

    def test_malformed_config_warns_and_uses_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as tmp, mock.patch.dict(os.environ, clean_env(), clear=True):
            root = Path(tmp)
            (root / "config.json").write_text("{oops", encoding="utf-8")
            manager, stream = self.make_manager(root)
            settings = manager.load_settings()

        self.assertEqual(settings, CliSettings())
        self.assertIn("Failed to parse JSON config", stream.getvalue())

    def test_unknown_paste_mode_warns(self) -> None:
        env = clean_env(PERPLEXITY_PASTE_MODE="telepathy")
        with tempfile.TemporaryDirectory() as tmp, mock.patch.dict(os.environ, env, clear=True):
            manager, stream = self.make_manager(Path(tmp))
            settings = manager.load_settings()

        self.assertEqual(settings.paste_mode, "bracketed")
        self.assertIn("Unknown paste_mode", stream.getvalue())

    def test_blank_env_values_are_ignored(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            (root / "config.json").write_text(json.dumps({"api_key": "file-key"}), encoding="utf-8")
            env = clean_env(PERPLEXITY_API_KEY="   ")
            with mock.patch.dict(os.environ, env, clear=True):
                manager, _ = self.make_manager(root)
                settings = manager.load_settings()

        self.assertEqual(settings.api_key, "file-key")

    def test_require_and_overrides(self) -> None:
        settings = CliSettings()
        with self.assertRaises(ConfigError) as ctx:
            settings.require()
        self.assertIn("PERPLEXITY_API_KEY", str(ctx.exception))

        updated = settings.with_overrides(api_key="k", model=None)
        updated.require()
        self.assertEqual(updated.model, settings.model)

    def test_paths_layout(self) -> None:
        paths = CliPaths(Path("/tmp/pcli"))
        self.assertEqual(paths.config_file, Path("/tmp/pcli/config.json"))
        self.assertEqual(paths.logs_dir, Path("/tmp/pcli/logs"))


if __name__ == "__main__":
    unittest.main()
