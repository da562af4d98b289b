"""Tests for serialhub.daemon."""

import io
import threading
from unittest.mock import patch

import pytest

import serialhub.daemon as daemon_mod
import serialhub.paths as paths_mod
from serialhub.config import DEFAULT_CONFIG_TOML
from serialhub.daemon import _on_signal, build_parser, main, print_ports, run_server
from serialhub.errors import PortEnumerationError
from serialhub.manager import ConnectionManager
from serialhub.ports import PortDescriptor


@pytest.fixture(autouse=True)
def no_system_config(tmp_path, monkeypatch):
    """Keep main() from finding a config outside *tmp_path*."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("SERIALHUB_CONFIG", raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.setattr(paths_mod, "ETC_DIR", str(tmp_path / "etc"))


class FakeServer:
    """Test double for a werkzeug server: blocks until shutdown()."""

    def __init__(self):
        """Initialize an idle server."""
        self.serving = threading.Event()
        self._stopped = threading.Event()
        self.shutdown_calls = 0

    def serve_forever(self) -> None:
        """Block until shutdown() is called."""
        self.serving.set()
        self._stopped.wait(5)

    def shutdown(self) -> None:
        """Stop serve_forever()."""
        self.shutdown_calls += 1
        self._stopped.set()


class TestRunServer:
    """Tests for the daemon run_server() function."""

    def test_serves_until_shutdown(self):
        """run_server() returns once the shutdown event is set."""
        shutdown = threading.Event()
        server = FakeServer()
        threading.Timer(0.1, shutdown.set).start()

        run_server(server, shutdown)

        assert server.serving.is_set()
        assert server.shutdown_calls == 1

    def test_shutdown_flag_stops_loop(self):
        """Setting shutdown before run_server() causes prompt return."""
        shutdown = threading.Event()
        shutdown.set()
        server = FakeServer()

        run_server(server, shutdown)

        assert server.shutdown_calls == 1

    def test_on_signal_sets_shutdown(self):
        """_on_signal sets the module-level shutdown event."""
        daemon_mod._shutdown.clear()
        _on_signal(15, None)
        assert daemon_mod._shutdown.is_set()
        daemon_mod._shutdown.clear()


class TestParser:
    """Tests for command-line parsing."""

    def test_config_optional(self):
        """The config argument may be omitted."""
        args = build_parser().parse_args([])
        assert args.config is None
        assert not args.verbose

    def test_overrides(self):
        """--host and --port are parsed."""
        args = build_parser().parse_args(["-v", "--host", "0.0.0.0", "--port", "9000", "x.toml"])
        assert args.config == "x.toml"
        assert args.host == "0.0.0.0"
        assert args.port == 9000
        assert args.verbose


class TestMain:
    """Tests for main()."""

    def test_generate_config(self, capsys):
        """--generate-config prints the default file and exits 0."""
        assert main(["--generate-config"]) == 0
        assert capsys.readouterr().out == DEFAULT_CONFIG_TOML

    @patch("serialhub.daemon.list_ports")
    def test_list_ports(self, mock_list, capsys):
        """--list-ports prints one line per device."""
        mock_list.return_value = [
            PortDescriptor("/dev/ttyACM0", "Arduino Uno"),
            PortDescriptor("/dev/ttyUSB0", "FT232R USB UART"),
        ]
        assert main(["--list-ports"]) == 0
        out = capsys.readouterr().out.splitlines()
        assert len(out) == 2
        assert out[0].startswith("/dev/ttyACM0")
        assert out[1].endswith("FT232R USB UART")

    @patch("serialhub.daemon.list_ports")
    def test_list_ports_failure(self, mock_list):
        """An enumeration failure exits 1."""
        mock_list.side_effect = PortEnumerationError("failed to list ports")
        assert main(["--list-ports"]) == 1

    def test_print_ports_count(self):
        """print_ports() returns how many ports it printed."""
        out = io.StringIO()
        with patch("serialhub.daemon.list_ports", return_value=[]):
            assert print_ports(out) == 0
        assert out.getvalue() == ""

    def test_serves_and_shuts_down(self, tmp_path, monkeypatch):
        """main() finds ./serialhub.toml, serves, and shuts the manager down."""
        cfg = tmp_path / "serialhub.toml"
        cfg.write_text('[server]\nport = 9100\nmax_connections = 3\n')
        monkeypatch.chdir(tmp_path)
        seen = {}

        def fake_make_server(host, port, app, threaded):
            seen.update(host=host, port=port, app=app, threaded=threaded)
            return FakeServer()

        def fake_run_server(server, shutdown):
            seen["shutdown"] = shutdown

        managers = []
        real_from_config = ConnectionManager.from_config

        def spy_from_config(cfg, opener=None):
            m = real_from_config(cfg, opener)
            managers.append(m)
            return m

        monkeypatch.setattr(daemon_mod, "make_server", fake_make_server)
        monkeypatch.setattr(daemon_mod, "run_server", fake_run_server)
        monkeypatch.setattr(daemon_mod.ConnectionManager, "from_config", spy_from_config)
        monkeypatch.setattr(daemon_mod.signal, "signal", lambda *a: None)
        monkeypatch.setattr(daemon_mod.atexit, "register", lambda f: f)

        assert main(["--host", "0.0.0.0"]) == 0

        assert seen["host"] == "0.0.0.0"
        assert seen["port"] == 9100
        assert seen["threaded"] is True
        assert seen["shutdown"] is daemon_mod._shutdown
        (manager,) = managers
        with seen["app"].test_client() as c:
            assert c.get("/api/connections").get_json() == []
        assert manager.stats()["active_sessions"] == 0
        assert manager._max_connections == 3
        assert manager._closed
