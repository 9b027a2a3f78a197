"""Tests for config validation and type safety."""

import logging
import os
import shutil
import tempfile
import unittest

from TexTrim.config import PipelineConfig, QUALITY_PRESETS, _merge_dict_to_dataclass
from TexTrim.errors import ConfigError


def _valid():
    config = PipelineConfig()
    config.data_root = "/games/skyrim/Data"
    return config


class TestConfigValidation(unittest.TestCase):
    def test_default_config_with_data_root_valid(self):
        _valid().validate()

    def test_data_root_required(self):
        with self.assertRaises(ConfigError) as ctx:
            PipelineConfig().validate()
        self.assertIn("data_root", str(ctx.exception))

    def test_config_error_is_a_value_error(self):
        with self.assertRaises(ValueError):
            PipelineConfig().validate()

    def test_all_problems_are_listed(self):
        config = _valid()
        config.optimize.preset = "ultra"
        config.optimize.max_workers = -1
        config.cache.fingerprint_mode = "mtime"
        with self.assertRaises(ConfigError) as ctx:
            config.validate()
        msg = str(ctx.exception)
        self.assertIn("optimize.preset", msg)
        self.assertIn("optimize.max_workers", msg)
        self.assertIn("cache.fingerprint_mode", msg)

    def test_max_workers_upper_bound(self):
        config = _valid()
        config.optimize.max_workers = 129
        with self.assertRaises(ConfigError):
            config.validate()

    def test_unknown_game_rejected(self):
        config = _valid()
        config.exclusions.game = "starfield"
        with self.assertRaises(ConfigError):
            config.validate()

    def test_double_wildcard_extra_pattern_rejected(self):
        config = _valid()
        config.exclusions.extra_patterns = ["textures/**"]
        with self.assertRaises(ConfigError):
            config.validate()

    def test_tool_must_be_plain_name(self):
        config = _valid()
        config.converter.tool = "texconv; rm -rf /"
        with self.assertRaises(ConfigError):
            config.validate()

    def test_timeout_and_retries_bounds(self):
        config = _valid()
        config.converter.timeout_seconds = 0
        config.optimize.retries = -1
        with self.assertRaises(ConfigError) as ctx:
            config.validate()
        self.assertIn("timeout_seconds", str(ctx.exception))
        self.assertIn("retries", str(ctx.exception))

    def test_archive_extensions_need_dot(self):
        config = _valid()
        config.vfs.archive_extensions = ["bsa"]
        with self.assertRaises(ConfigError):
            config.validate()

    def test_invalid_log_level(self):
        config = _valid()
        config.log_level = "VERBOSE"
        with self.assertRaises(ConfigError) as ctx:
            config.validate()
        self.assertIn("log_level", str(ctx.exception))

    def test_every_preset_validates(self):
        for preset in QUALITY_PRESETS:
            config = _valid()
            config.optimize.preset = preset
            config.validate()

    def test_resolve_workers(self):
        config = _valid()
        config.optimize.max_workers = 3
        self.assertEqual(config.resolve_workers(), 3)
        config.optimize.max_workers = 0
        self.assertGreaterEqual(config.resolve_workers(), 1)


class TestConfigYAML(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.path = os.path.join(self.tmpdir, "config.yaml")

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _write(self, text):
        with open(self.path, "w", encoding="utf-8") as fh:
            fh.write(text)

    def test_yaml_roundtrip(self):
        config = _valid()
        config.optimize.preset = "performance"
        config.exclusions.extra_patterns = ["textures/custom"]
        config.to_yaml(self.path)
        loaded = PipelineConfig.from_yaml(self.path)
        loaded.validate()
        self.assertEqual(loaded.data_root, config.data_root)
        self.assertEqual(loaded.optimize.preset, "performance")
        self.assertEqual(loaded.exclusions.extra_patterns, ["textures/custom"])

    def test_missing_file_uses_defaults(self):
        loaded = PipelineConfig.from_yaml(os.path.join(self.tmpdir, "nope.yaml"))
        self.assertEqual(loaded.optimize.preset, "optimum")

    def test_broken_yaml_is_config_error(self):
        self._write("optimize: [unclosed\n")
        with self.assertRaises(ConfigError):
            PipelineConfig.from_yaml(self.path)

    def test_non_mapping_root_is_config_error(self):
        self._write("- just\n- a list\n")
        with self.assertRaises(ConfigError):
            PipelineConfig.from_yaml(self.path)

    def test_unknown_key_warns(self):
        self._write("optimize:\n  turbo: true\n")
        with self.assertLogs("texture_optimizer.config", level="WARNING") as cm:
            PipelineConfig.from_yaml(self.path)
        self.assertTrue(any("optimize.turbo" in msg for msg in cm.output))

    def test_future_config_version_warns(self):
        self._write("config_version: 99\n")
        with self.assertLogs("texture_optimizer.config", level="WARNING") as cm:
            PipelineConfig.from_yaml(self.path)
        self.assertTrue(any("config_version=99" in msg for msg in cm.output))


class TestConfigTypeSafety(unittest.TestCase):
    def test_type_mismatch_rejected(self):
        config = PipelineConfig()
        with self.assertLogs("texture_optimizer.config", level="WARNING") as cm:
            _merge_dict_to_dataclass(config.optimize, {"max_workers": "four"})
        self.assertTrue(any("type mismatch" in msg for msg in cm.output))
        self.assertEqual(config.optimize.max_workers, 0)

    def test_integral_float_is_accepted_for_int(self):
        config = PipelineConfig()
        _merge_dict_to_dataclass(config.converter, {"timeout_seconds": 60.0})
        self.assertEqual(config.converter.timeout_seconds, 60)
        self.assertIsInstance(config.converter.timeout_seconds, int)

    def test_null_keeps_default(self):
        config = PipelineConfig()
        with self.assertLogs("texture_optimizer.config", level="WARNING"):
            _merge_dict_to_dataclass(config.cache, {"cache_path": None})
        self.assertTrue(config.cache.cache_path)


class TestLogging(unittest.TestCase):
    def test_setup_logging_invalid_level_defaults_to_info(self):
        from TexTrim.core import setup_logging
        setup_logging("INVALID_LEVEL")
        effective = logging.getLogger("texture_optimizer").getEffectiveLevel()
        self.assertEqual(effective, logging.INFO)

    def test_component_formatter_strips_package_logger(self):
        from TexTrim.core.logging import CONSOLE_FORMAT, ComponentFormatter
        fmt = ComponentFormatter(CONSOLE_FORMAT)
        record = logging.LogRecord("texture_optimizer.vfs", logging.INFO, __file__, 1,
                                   "built %d layers", (3,), None)
        self.assertEqual(fmt.format(record), "INFO    vfs: built 3 layers")
        foreign = logging.LogRecord("urllib3", logging.WARNING, __file__, 1, "x", (), None)
        self.assertEqual(fmt.format(foreign), "WARNING urllib3: x")

    def test_embedded_mode_adds_run_log_once(self):
        from TexTrim.core import default_log_path, setup_logging
        own = logging.getLogger("texture_optimizer")
        root = logging.getLogger()
        host = logging.NullHandler()
        root.addHandler(host)
        tmpdir = tempfile.mkdtemp()
        path = os.path.abspath(default_log_path(tmpdir))
        try:
            setup_logging("DEBUG", path)
            setup_logging("DEBUG", path)
            mine = [h for h in own.handlers if getattr(h, "baseFilename", None) == path]
            self.assertEqual(len(mine), 1)
            logging.getLogger("texture_optimizer.optimize").debug("retrying %s", "rock.dds")
            mine[0].flush()
            with open(path, encoding="utf-8") as fh:
                text = fh.read()
            self.assertIn("optimize [T", text)
            self.assertIn("retrying rock.dds", text)
        finally:
            for handler in list(own.handlers):
                if getattr(handler, "baseFilename", None) == path:
                    own.removeHandler(handler)
                    handler.close()
            root.removeHandler(host)
            own.setLevel(logging.NOTSET)
            shutil.rmtree(tmpdir, ignore_errors=True)
