from relaygate.config import Settings


def test_from_env_reads_and_converts():
    settings = Settings.from_env(
        {
            "TARGET_URL": "https://news.example:8443/front",
            "PROXY_PORT": "9050",
            "PROXY_USERNAME_BASE": "acct",
            "PROXY_SESSION_TIME": "30",
            "USE_TUNNEL": "false",
            "PROXY_REMOTE_DNS": "yes",
            "REQUEST_TIMEOUT": "12.5",
        },
        dotenv=False,
    )
    assert settings.proxy_port == 9050
    assert settings.use_tunnel is False
    assert settings.proxy_remote_dns is True
    assert settings.request_timeout == 12.5
    assert settings.max_retries == 3
    assert settings.target_origin == "https://news.example:8443"
    assert settings.target_host == "news.example"
    assert settings.proxy_username("0A1B2C3D") == "acct-sessid-0A1B2C3D-sessTime-30"


def test_mask_hides_password():
    settings = Settings(proxy_password="hunter2")
    assert settings.mask("socks5h://u:hunter2@h:1") == "socks5h://u:***@h:1"
    assert Settings().mask("nothing to hide") == "nothing to hide"
