# tests/test_cli.py
from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from conftest import script_binary
from foundryup import cli
from foundryup.config import Network
from foundryup.errors import BinaryInUseError
from foundryup.processes import check_bins_in_use

TARGET_ARGS = ["--platform", "linux", "--arch", "amd64"]


@pytest.fixture
def foundry_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    root = tmp_path / "fd"
    monkeypatch.setenv("FOUNDRY_DIR", str(root))
    monkeypatch.delenv("FOUNDRYUP_DEBUG", raising=False)
    return root


@pytest.fixture
def offline(github, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(cli, "ArchiveTransport", lambda **kw: github.transport())
    monkeypatch.setattr(cli, "check_bins_in_use", lambda names: None)
    return github


def test_request_from_args():
    args = cli.build_parser().parse_args(["-i", "1.5.0", "-n", "tempo", "-j", "8", "-f", "-P", "3", "-p", "~/src"])
    req = cli.request_from_args(args)
    assert req.version == "1.5.0"
    assert req.network is Network.TEMPO
    assert req.jobs == 8 and req.force and req.pr == 3
    assert req.path == Path("~/src").expanduser()


def test_branch_and_pr_are_exclusive(capsys):
    with pytest.raises(SystemExit) as ei:
        cli.build_parser().parse_args(["-b", "main", "-P", "1"])
    assert ei.value.code == 2


def test_unknown_network_rejected():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["-n", "mainnet"])


@pytest.mark.posix
def test_install_list_use(foundry_dir, offline, clean_path, capsys):
    offline.publish_foundry("v1.5.0", {n: script_binary(n, "1.5.0") for n in ("forge", "cast", "anvil", "chisel")})

    assert cli.main(["-i", "1.5.0", *TARGET_ARGS]) == 0
    err = capsys.readouterr().err
    assert "foundryup: checking if foundryup is up to date..." in err
    assert "foundryup: installing foundry (version v1.5.0, tag v1.5.0)" in err
    assert "foundryup: done!" in err
    assert err.rstrip().endswith("foundryup: foundryup is up to date.")

    assert cli.main(["-l", *TARGET_ARGS]) == 0
    err = capsys.readouterr().err
    assert "foundryup: v1.5.0\n" in err
    assert "foundryup: - forge Version: 1.5.0" in err

    (foundry_dir / "bin" / "forge").unlink()
    assert cli.main(["-u", "1.5.0", *TARGET_ARGS]) == 0
    assert "foundryup: use - forge Version: 1.5.0" in capsys.readouterr().err
    assert (foundry_dir / "bin" / "forge").exists()


def test_use_missing_version_exits_1(foundry_dir, offline, capsys):
    assert cli.main(["-u", "0.0.1", *TARGET_ARGS]) == 1
    assert "foundryup: error: version v0.0.1 not installed" in capsys.readouterr().err


def test_failed_download_exits_1(foundry_dir, offline, capsys):
    assert cli.main(["-i", "9.9.9", "-f", *TARGET_ARGS]) == 1
    assert "foundryup: error: http 404" in capsys.readouterr().err


def test_update_skips_background_check(foundry_dir, offline, capsys):
    assert cli.main(["-U", *TARGET_ARGS]) == 0
    err = capsys.readouterr().err
    assert "checking if foundryup is up to date" not in err
    assert "foundryup is already up to date" in err


def test_running_binary_blocks_install(foundry_dir, github, monkeypatch, capsys):
    monkeypatch.setattr(cli, "ArchiveTransport", lambda **kw: github.transport())
    procs = [SimpleNamespace(info={"pid": 999999, "name": "/usr/local/bin/anvil"})]
    with patch("foundryup.processes.psutil.process_iter", return_value=procs):
        assert cli.main(["-i", "stable", *TARGET_ARGS]) == 1
    assert "'anvil' is currently running, please stop the process and try again" in capsys.readouterr().err
    assert github.count(".tar.gz") == 0


def test_check_bins_in_use_ignores_other_processes():
    procs = [
        SimpleNamespace(info={"pid": 1, "name": "forgery"}),
        SimpleNamespace(info={"pid": 2, "name": None}),
        SimpleNamespace(info={"pid": 3, "name": "cast.exe"}),
    ]
    with patch("foundryup.processes.psutil.process_iter", return_value=procs[:2]):
        check_bins_in_use(["forge", "cast"])
    with patch("foundryup.processes.psutil.process_iter", return_value=procs):
        with pytest.raises(BinaryInUseError, match="'cast'"):
            check_bins_in_use(["forge", "cast"])
