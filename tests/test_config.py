from __future__ import annotations

from couch_remote.config import DEFAULT_CONFIG, Config, deep_merge, load_config


def test_yaml_file_overrides_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "server:\n"
        "  port: 9090\n"
        "monitor:\n"
        "  stale_timeout: 60\n"
        "discovery:\n"
        "  network_id: CR_home\n"
    )
    config = Config(path)

    assert config.port == 9090
    assert config.ws_port == 9091
    assert config.stale_timeout == 60
    assert config.gc_interval == DEFAULT_CONFIG["monitor"]["gc_interval"]
    assert config.network_id == "CR_home"
    assert config.allowed_networks == DEFAULT_CONFIG["server"]["allowed_networks"]


def test_missing_file_uses_defaults_without_sharing_them(tmp_path):
    config = load_config(tmp_path / "absent.yaml")
    config["server"]["port"] = 1

    assert DEFAULT_CONFIG["server"]["port"] == 8080
    assert load_config(tmp_path / "absent.yaml")["limits"]["max_sessions"] == 64


def test_overrides_and_deep_merge(tmp_path):
    config = Config(tmp_path / "absent.yaml", overrides={"limits": {"rate_limit": 5}})
    assert config.rate_limit == 5
    assert config.rate_window == DEFAULT_CONFIG["limits"]["rate_window"]

    merged = deep_merge({"a": {"b": 1, "c": 2}}, {"a": {"c": 3}, "d": 4})
    assert merged == {"a": {"b": 1, "c": 3}, "d": 4}
