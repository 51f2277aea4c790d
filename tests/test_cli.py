from pathlib import Path

from quest_sensor_logger import _build_parser
from quest_sensor_logger.config import DEFAULT_DATA_DIR, AppConfig


class TestParser:
    def test_defaults_to_dashboard(self):
        args = _build_parser().parse_args([])
        assert args.command is None
        assert args.log_level == "WARNING"

    def test_shared_flags_before_subcommand(self):
        args = _build_parser().parse_args(
            ["--mock", "--seed", "3", "--scan-timeout", "2.5", "log", "--device-name", "quest_9"]
        )
        assert args.mock
        assert args.command == "log"
        assert args.device_name == "quest_9"

    def test_export_requires_path(self):
        args = _build_parser().parse_args(["export", "out.csv"])
        assert args.path == "out.csv"


class TestAppConfig:
    def test_defaults(self):
        config = AppConfig()
        assert config.scan_timeout_ms == 10000
        assert config.dedup_window_ms == 50
        assert config.error_throttle_ms == 5000
        assert config.data_dir == DEFAULT_DATA_DIR
        assert config.database_path.name == "appData.db"

    def test_from_args_maps_flags(self, tmp_path):
        args = _build_parser().parse_args(
            [
                "--mock",
                "--seed",
                "3",
                "--scan-timeout",
                "2.5",
                "--data-dir",
                str(tmp_path),
                "upload",
                "--bucket",
                "b1",
            ]
        )
        config = AppConfig.from_args(args)

        assert config.simulation
        assert config.seed == 3
        assert config.scan_timeout_ms == 2500
        assert config.data_dir == Path(tmp_path)
        assert config.upload_bucket == "b1"
        assert config.settings_path == Path(tmp_path) / "settings.json"

    def test_from_args_without_flags_keeps_defaults(self):
        config = AppConfig.from_args(_build_parser().parse_args(["pair"]))
        assert config == AppConfig()
