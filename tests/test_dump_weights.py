import json

import torch

from legacy_weights.dump_weights import main

from conftest import net_record


def test_dump_prints_block_layout(tmp_path, capsys):
    path = tmp_path / "net.pt"
    torch.save(net_record(filters=8, blocks=2), path)

    assert main([str(path)]) == 0

    out = capsys.readouterr().out
    assert "filters=8 blocks=2 se=False" in out
    assert "residual.1.conv2" in out
    assert "unfolded" in out


def test_dump_json_after_fold(tmp_path, capsys):
    path = tmp_path / "net.pt"
    torch.save(net_record(filters=8, blocks=1, conv_policy=True), path)

    assert main([str(path), "--fold", "--json"]) == 0

    summary = json.loads(capsys.readouterr().out)
    by_name = {b["name"]: b for b in summary["conv"]}
    assert by_name["input"] == {
        "name": "input",
        "kernel": 3,
        "outputs": 8,
        "inputs": 12,
        "batchnorm": True,
        "state": "folded",
    }
    assert by_name["policy"]["state"] == "unfolded"
    assert by_name["policy"]["kernel"] == 3
    assert summary["heads"]["ip_pol_w"] == 0


def test_dump_reports_format_error(tmp_path, capsys):
    rec = net_record(blocks=1)
    rec["input"]["bn_stddivs"] = torch.ones(3)
    path = tmp_path / "bad.pt"
    torch.save(rec, path)

    assert main([str(path)]) == 1
    assert "bn_stddivs" in capsys.readouterr().err


def test_dump_reports_missing_file(tmp_path, capsys):
    assert main([str(tmp_path / "absent.pt")]) == 1
    assert "cannot load weights record" in capsys.readouterr().err


def test_dump_reports_unreadable_file(tmp_path, capsys):
    path = tmp_path / "garbage.pt"
    path.write_bytes(b"not a torch file\n")

    assert main([str(path)]) == 1
    assert "cannot load weights record" in capsys.readouterr().err
