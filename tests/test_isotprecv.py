from canutils.isotprecv import format_pdu, main


def test_format_pdu():
    assert format_pdu(bytes([0x01, 0xAB])) == "01 AB "


def test_format_pdu_empty():
    assert format_pdu(b"") == ""


def test_format_pdu_one_field_per_byte():
    data = bytes(range(40))
    text = format_pdu(data)
    assert text.split() == [f"{b:02X}" for b in data]
    assert len(text) == 3 * len(data)


def test_missing_ids(capsys):
    assert main(["-s", "123", "can0"]) == 1
    assert "Usage:" in capsys.readouterr().err


def test_no_interface(capsys):
    assert main(["-s", "123", "-d", "321"]) == 1
    assert "Usage:" in capsys.readouterr().err


def test_help(capsys):
    assert main(["-?"]) == 0
    assert "Usage:" in capsys.readouterr().err


def test_bad_ext_address(capsys):
    assert main(["-s", "1", "-d", "2", "-x", "zz", "can0"]) == 0
    assert "incorrect extended addr values 'zz'." in capsys.readouterr().out


def test_bad_padding(capsys):
    assert main(["-s", "1", "-d", "2", "-p", "zz", "can0"]) == 0
    assert "incorrect padding values 'zz'." in capsys.readouterr().out


def test_bad_padding_check(capsys):
    assert main(["-P", "q", "-s", "1", "-d", "2", "can0"]) == 0
    assert "unknown padding check option 'q'." in capsys.readouterr().out


def test_bad_link_layer(capsys):
    assert main(["-L", "1:2", "-s", "1", "-d", "2", "can0"]) == 0
    assert "unknown link layer options '1:2'." in capsys.readouterr().out


def test_unknown_interface(capsys):
    assert main(["-s", "1", "-d", "2", "nosuchcan0"]) == 1
    assert "isotprecv" in capsys.readouterr().err