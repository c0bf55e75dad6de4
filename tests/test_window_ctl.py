import pathlib
import sys

import pytest

repo_root = pathlib.Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

import window_ctl


class FakeProxy:
    def __init__(self, windows=None, monitors=1, fail=None):
        self.windows = windows or []
        self.monitors = monitors
        self.fail = fail or set()
        self.moves = []

    def ListWindows(self):
        if "list" in self.fail:
            raise RuntimeError("GDBus.Error:org.freedesktop.DBus.Error.ServiceUnknown")
        return self.windows

    def SetWindowGeomByClass(self, window_class, geom):
        if "move" in self.fail:
            raise RuntimeError("timeout")
        self.moves.append((window_class, geom))
        return True

    def GetNumMonitors(self):
        if "monitors" in self.fail:
            raise RuntimeError("no such method")
        return self.monitors


class FakeBus:
    def __init__(self, proxy):
        self.proxy = proxy
        self.requested = None

    def get(self, bus_name, object_path):
        self.requested = (bus_name, object_path)
        return {window_ctl.INTERFACE: self.proxy}


def test_list_windows_parses_structs_and_normalises_empty_ids():
    proxy = FakeProxy([
        ((10, 20, 800, 600, False), 1234, 7, "gnome-terminal-server", "org.gnome.Terminal", ""),
        ((-32000, 0, 10, 10, True), 99, 8, "", "", "org.example.App"),
    ])

    windows = window_ctl.WindowCtl(proxy).list_windows()

    assert windows[0] == window_ctl.WindowRecord(
        window_class="gnome-terminal-server",
        geometry=window_ctl.WindowGeom(10, 20, 800, 600, False),
        pid=1234,
        stable_sequence=7,
        gtk_app_id="org.gnome.Terminal",
        sandboxed_app_id=None,
    )
    assert windows[0].on_screen
    assert windows[1].gtk_app_id is None
    assert windows[1].sandboxed_app_id == "org.example.App"
    assert windows[1].geometry.minimized is True
    assert not windows[1].on_screen


def test_window_from_struct_accepts_mappings():
    w = window_ctl.window_from_struct({
        "window_class": "firefox",
        "geom": {"x": 1, "y": 2, "width": 3, "height": 4, "minimized": False},
        "pid": 5,
        "stable_seq": 6,
        "gtk_app_id": None,
    })

    assert w.geometry == window_ctl.WindowGeom(1, 2, 3, 4)
    assert w.stable_sequence == 6
    assert w.gtk_app_id is None


def test_transport_errors_become_extension_errors():
    ctl = window_ctl.WindowCtl(FakeProxy(fail={"list", "move", "monitors"}))
    window = window_ctl.WindowRecord("x", window_ctl.WindowGeom(0, 0, 1, 1), 1, 1)

    with pytest.raises(window_ctl.ExtensionError):
        ctl.list_windows()
    with pytest.raises(window_ctl.ExtensionError):
        ctl.move_window(window, window.geometry)
    with pytest.raises(window_ctl.ExtensionError):
        ctl.num_monitors()


def test_malformed_list_is_an_extension_error():
    ctl = window_ctl.WindowCtl(FakeProxy([("not", "a", "window")]))

    with pytest.raises(window_ctl.ExtensionError):
        ctl.list_windows()


def test_move_window_sends_class_and_geometry_struct():
    proxy = FakeProxy()
    ctl = window_ctl.WindowCtl(proxy)
    window = window_ctl.WindowRecord("Gedit", window_ctl.WindowGeom(0, 0, 1, 1), 1, 1)

    assert ctl.move_window(window, window_ctl.WindowGeom(100, 50, 640, 480, True))
    assert proxy.moves == [("Gedit", (100, 50, 640, 480, True))]


def test_connect_checks_the_extension(monkeypatch):
    bus = FakeBus(FakeProxy(monitors=2))
    opened = {}

    def _open_bus(address, system):
        opened["args"] = (address, system)
        return bus

    monkeypatch.setattr(window_ctl, "_open_bus", _open_bus)

    ctl = window_ctl.connect(system=True)

    assert ctl.num_monitors() == 2
    assert opened["args"] == (None, True)
    assert bus.requested == (window_ctl.BUS_NAME, window_ctl.OBJECT_PATH)


def test_connect_reports_unavailable_extension(monkeypatch):
    def _no_bus(address, system):
        raise RuntimeError("Could not connect: No such file or directory")

    monkeypatch.setattr(window_ctl, "_open_bus", _no_bus)
    with pytest.raises(window_ctl.ExtensionUnavailable):
        window_ctl.connect()

    monkeypatch.setattr(window_ctl, "_open_bus",
                        lambda address, system: FakeBus(FakeProxy(fail={"monitors"})))
    with pytest.raises(window_ctl.ExtensionUnavailable):
        window_ctl.connect()
