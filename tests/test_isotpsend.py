from canutils.isotpsend import fixed_payload, main, read_hex_bytes


def test_read_hex_bytes():
    assert read_hex_bytes("11 22 33", 5000) == bytes([0x11, 0x22, 0x33])


def test_read_hex_bytes_across_lines():
    assert read_hex_bytes("11\n\t22\n", 5000) == bytes([0x11, 0x22])


def test_read_hex_bytes_stops_at_garbage():
    assert read_hex_bytes("11 zz 22", 100) == bytes([0x11])


def test_read_hex_bytes_respects_limit():
    assert read_hex_bytes("1 2 3 4", 2) == bytes([1, 2])


def test_read_hex_bytes_prefix():
    assert read_hex_bytes("0x10 0X20", 10) == bytes([0x10, 0x20])


def test_read_hex_bytes_wraps():
    assert read_hex_bytes("1FF", 10) == bytes([0xFF])


def test_read_hex_bytes_empty():
    assert read_hex_bytes("", 10) == b""


def test_fixed_payload_start():
    assert fixed_payload(5) == bytes([1, 2, 3, 4, 5])


def test_fixed_payload_cycle():
    payload = fixed_payload(300)
    assert len(payload) == 300
    assert 0 not in payload
    assert payload[255] == payload[0]
    assert max(payload) == 0xFF


def test_zero_length_rejected(capsys):
    assert main(["-D", "0", "-s", "1", "-d", "2", "can0"]) == 0
    assert "Usage:" in capsys.readouterr().err


def test_oversized_length_rejected(capsys):
    assert main(["-D", "5000", "-s", "1", "-d", "2", "can0"]) == 0
    assert "Usage:" in capsys.readouterr().err


def test_missing_rx_id(capsys):
    assert main(["-s", "1", "can0"]) == 1
    assert "Usage:" in capsys.readouterr().err


def test_broadcast_without_rx_id_reaches_socket(capsys):
    assert main(["-S", "-s", "1", "nosuchcan0"]) == 1
    assert "isotpsend" in capsys.readouterr().err


def test_bad_padding(capsys):
    assert main(["-p", "zz", "-s", "1", "-d", "2", "can0"]) == 0
    assert "incorrect padding values 'zz'." in capsys.readouterr().out