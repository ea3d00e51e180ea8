import pytest
from click.testing import CliRunner

from filecoffee import cli as cli_module
from filecoffee.cli import cli, format_size
from filecoffee.config import Config
from filecoffee.rtc.peer import PeerConnectionManager
from filecoffee.session import SessionContext, SessionRole, SessionStatus
from filecoffee.signaling.rooms import RoomStatus
from filecoffee.transfer.receiver import ReceivedFile


async def _noop(*args):
    return None


class StubController:
    """Answers room lookups and finishes every receive at once."""

    def __init__(self, has_password: bool):
        self.has_password = has_password
        self.lookups = []
        self.joins = []

    def __call__(self, config):
        return self

    async def check_room(self, room_id):
        self.lookups.append(room_id)
        return RoomStatus(room_id=room_id, exists=True, has_password=self.has_password)

    async def receive(self, room_id, password=None, download_dir=None, check=True):
        self.joins.append((room_id, password, check))
        peer = PeerConnectionManager(send_signal=_noop, ice_servers=_noop)
        context = SessionContext(role=SessionRole.ANSWERER, config=Config(), transport=None, peer=peer)
        context.received = ReceivedFile(name="a.txt", mime_type="text/plain", data=b"hi")
        context.set_status(SessionStatus.COMPLETE)
        return context

    async def close(self):
        pass


@pytest.fixture
def runner():
    return CliRunner()


def test_receive_prompts_for_protected_room(runner, monkeypatch):
    controller = StubController(has_password=True)
    monkeypatch.setattr(cli_module, "SessionController", controller)

    result = runner.invoke(cli, ["receive", "abcd12"], input="hunter2\n")

    assert result.exit_code == 0, result.output
    assert "Room password" in result.output
    assert controller.lookups == ["abcd12"]
    assert controller.joins == [("abcd12", "hunter2", False)]


def test_receive_open_room_does_not_prompt(runner, monkeypatch):
    controller = StubController(has_password=False)
    monkeypatch.setattr(cli_module, "SessionController", controller)

    result = runner.invoke(cli, ["receive", "abcd12"])

    assert result.exit_code == 0, result.output
    assert "Room password" not in result.output
    assert controller.joins == [("abcd12", None, False)]


def test_receive_with_password_skips_prompt(runner, monkeypatch):
    controller = StubController(has_password=True)
    monkeypatch.setattr(cli_module, "SessionController", controller)

    result = runner.invoke(cli, ["receive", "abcd12", "-p", "pw"])

    assert result.exit_code == 0, result.output
    assert controller.lookups == []
    assert controller.joins == [("abcd12", "pw", True)]


def test_format_size():
    assert format_size(512) == "512.0 B"
    assert format_size(1048576) == "1.0 MB"
