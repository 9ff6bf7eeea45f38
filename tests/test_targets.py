from cliprelay.targets import StaticPairing, UploadTarget, normalize_device_url, parse_launch_params


def test_normalize_device_url():
    assert normalize_device_url("192.168.1.20:8080") == "http://192.168.1.20:8080"
    assert normalize_device_url("https://phone.local:8443/pair?x=1") == "https://phone.local:8443"
    assert normalize_device_url("  ") == ""
    assert normalize_device_url("ftp://host") == ""


def test_parse_launch_params():
    params = parse_launch_params("?device=10.0.0.5:9000/&action=Upload&session=abc")

    assert params == {"device": "http://10.0.0.5:9000", "action": "upload", "session": "abc"}


def test_target_key_ignores_token_rotation():
    first = UploadTarget("http://10.0.0.5:9000", token="t1", device_id="phone")
    second = UploadTarget("http://10.0.0.5:9000", token="t2", device_id="phone")
    plain = UploadTarget.for_url("http://10.0.0.5:9000/")

    assert first.key == second.key
    assert first.key.startswith("device-")
    assert plain.key.startswith("url-")
    assert plain.key != first.key
    assert first.headers() == {"Authorization": "Bearer t1"}
    assert plain.headers() == {}
    assert plain.endpoint("/init") == "http://10.0.0.5:9000/init"


def test_static_pairing_invalidation():
    pairing = StaticPairing("10.0.0.5:9000", "secret", device_id="phone")
    target = UploadTarget.from_pairing(pairing)

    assert target is not None
    assert target.paired
    assert target.url == "http://10.0.0.5:9000"

    target.invalidate_credentials()

    assert pairing.current_target() is None
    assert UploadTarget.from_pairing(pairing) is None
