"""Unit tests for config loading and consumer key storage."""

from pathlib import Path

import pytest
import yaml

from ovh_dyndns.cli import (
    DEFAULT_DNS_SERVER,
    DEFAULT_TTL_SECONDS,
    ConfigError,
    Domain,
    OVHCredentials,
    load_config,
    store_consumer_key,
)


def write_config(tmp_path: Path, text: str) -> str:
    config_file = tmp_path / "config.yaml"
    config_file.write_text(text)
    return str(config_file)


class TestLoadConfig:
    """Tests for load_config."""

    def test_load_full_config(self, tmp_path: Path) -> None:
        path = write_config(
            tmp_path,
            """
check_interval: 10m
dns_server: 192.0.2.53:5353
ip_provider: https://ip.example.net/
server_address: "127.0.0.1:9000"
http_timeout: 3
dns_timeout: 2s
domains:
  - domain: example.com
    sub_domain: home
    ttl: 60
  - domain: example.org.
    sub_domain: vpn
    ttl: 2m
ovh:
  endpoint: ovh-eu
  application_key: ak
  application_secret: as
  consumer_key: ck
""",
        )

        config = load_config(path)

        assert config.domains == (
            Domain(zone="example.com", subdomain="home", ttl=60),
            Domain(zone="example.org", subdomain="vpn", ttl=120),
        )
        assert config.check_interval == 600
        assert config.dns_server == "192.0.2.53:5353"
        assert config.ip_provider == "https://ip.example.net/"
        assert config.server_address == "127.0.0.1:9000"
        assert config.http_timeout == 3
        assert config.dns_timeout == 2
        assert config.ovh == OVHCredentials("ovh-eu", "ak", "as", "ck")

    def test_defaults(self, tmp_path: Path) -> None:
        path = write_config(tmp_path, "domains:\n  - domain: example.com\n")

        config = load_config(path)

        assert config.domains == (Domain("example.com", "", DEFAULT_TTL_SECONDS),)
        assert config.domains[0].hostname == "example.com"
        assert config.dns_server == DEFAULT_DNS_SERVER
        assert config.ovh == OVHCredentials()

    def test_check_interval_below_min_ttl_is_clamped_up(self, tmp_path: Path) -> None:
        path = write_config(
            tmp_path,
            """
check_interval: 30s
domains:
  - {domain: example.com, sub_domain: a, ttl: 300}
  - {domain: example.org, sub_domain: b, ttl: 120}
""",
        )

        assert load_config(path).check_interval == 120

    def test_check_interval_above_min_ttl_is_kept(self, tmp_path: Path) -> None:
        path = write_config(
            tmp_path,
            "check_interval: 1h\ndomains:\n  - {domain: example.com, sub_domain: a, ttl: 60}\n",
        )

        assert load_config(path).check_interval == 3600

    def test_single_domain_form(self, tmp_path: Path) -> None:
        path = write_config(
            tmp_path,
            "domain: example.com\nsub_domain: home\nttl: 90\ndns_provider: 192.0.2.1:53\n",
        )

        config = load_config(path)

        assert config.domains == (Domain("example.com", "home", 90),)
        assert config.dns_server == "192.0.2.1:53"
        assert config.check_interval == 300

    def test_top_level_ttl_is_the_domain_default(self, tmp_path: Path) -> None:
        path = write_config(tmp_path, "ttl: 1m\ndomains:\n  - {domain: example.com, sub_domain: a}\n")

        assert load_config(path).domains[0].ttl == 60

    def test_zero_domains_is_an_error(self, tmp_path: Path) -> None:
        path = write_config(tmp_path, "check_interval: 5m\n")

        with pytest.raises(ConfigError, match="At least one domain"):
            load_config(path)

    def test_zero_domains_allowed_when_not_required(self, tmp_path: Path) -> None:
        path = write_config(tmp_path, "server_address: ':8080'\n")

        assert load_config(path, require_domains=False).domains == ()

    def test_errors_are_collected(self, tmp_path: Path) -> None:
        path = write_config(
            tmp_path,
            """
check_interval: soon
ip_provider: ftp://nope
domains:
  - sub_domain: orphan
  - {domain: example.com, sub_domain: a, ttl: 1x}
  - {domain: example.com, sub_domain: b}
  - {domain: example.com, sub_domain: b}
""",
        )

        with pytest.raises(ConfigError) as exc_info:
            load_config(path)

        message = str(exc_info.value)
        assert "check_interval" in message
        assert "ip_provider" in message
        assert "domains[0]: 'domain' is required" in message
        assert "domains[1]" in message
        assert "b.example.com is listed more than once" in message

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="not found"):
            load_config(str(tmp_path / "missing.yaml"))

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = write_config(tmp_path, "domains: [unclosed\n")

        with pytest.raises(ConfigError, match="Failed to load config"):
            load_config(path)

    def test_non_mapping_document(self, tmp_path: Path) -> None:
        path = write_config(tmp_path, "- just\n- a list\n")

        with pytest.raises(ConfigError, match="must contain a mapping"):
            load_config(path)


class TestStoreConsumerKey:
    """Tests for store_consumer_key."""

    def test_consumer_key_is_added_and_other_settings_kept(self, tmp_path: Path) -> None:
        path = write_config(
            tmp_path,
            "domains:\n  - {domain: example.com, sub_domain: a}\novh:\n  endpoint: ovh-eu\n",
        )

        store_consumer_key(path, "new-key")

        data = yaml.safe_load(Path(path).read_text())
        assert data["ovh"] == {"endpoint": "ovh-eu", "consumer_key": "new-key"}
        assert data["domains"] == [{"domain": "example.com", "sub_domain": "a"}]
        assert load_config(path).ovh.consumer_key == "new-key"

    def test_consumer_key_replaces_previous_one(self, tmp_path: Path) -> None:
        path = write_config(tmp_path, "ovh:\n  consumer_key: old\n")

        store_consumer_key(path, "new")

        assert yaml.safe_load(Path(path).read_text())["ovh"]["consumer_key"] == "new"
        assert not Path(path + ".tmp").exists()

    def test_creates_file_when_missing(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "config.yaml"

        store_consumer_key(str(path), "key")

        assert yaml.safe_load(path.read_text()) == {"ovh": {"consumer_key": "key"}}


class TestLoadConfigRejectsNonPositiveDurations:
    """Zero or negative intervals, ttls and timeouts are configuration errors."""

    @pytest.mark.parametrize("key", ["check_interval", "ttl", "http_timeout", "dns_timeout"])
    def test_zero_top_level_duration(self, tmp_path: Path, key: str) -> None:
        path = write_config(
            tmp_path, f"{key}: 0\ndomains:\n  - {{domain: example.com, sub_domain: a, ttl: 60}}\n"
        )

        with pytest.raises(ConfigError, match=f"{key}: must be positive"):
            load_config(path)

    def test_zero_domain_ttl(self, tmp_path: Path) -> None:
        path = write_config(tmp_path, "domains:\n  - {domain: example.com, sub_domain: a, ttl: 0}\n")

        with pytest.raises(ConfigError, match=r"domains\[0\]: ttl must be at least 1s"):
            load_config(path)

    def test_zero_interval_and_ttl_never_reach_the_scheduler(self, tmp_path: Path) -> None:
        path = write_config(
            tmp_path,
            "check_interval: 0\nttl: 0\ndomains:\n  - {domain: example.com, sub_domain: a}\n",
        )

        with pytest.raises(ConfigError) as exc_info:
            load_config(path)

        assert "check_interval" in str(exc_info.value)
        assert "ttl" in str(exc_info.value)
