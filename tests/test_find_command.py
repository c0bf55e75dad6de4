import pathlib
import sys

import psutil
import pytest

repo_root = pathlib.Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

import find_command as fc
from window_ctl import WindowGeom, WindowRecord


def _record(window_class="", pid=4242, gtk_app_id=None, sandboxed_app_id=None):
    return WindowRecord(
        window_class=window_class,
        geometry=WindowGeom(0, 0, 800, 600),
        pid=pid,
        stable_sequence=1,
        gtk_app_id=gtk_app_id,
        sandboxed_app_id=sandboxed_app_id,
    )


class FakeLocator:
    def __init__(self, entries=None):
        self.entries = entries or {}
        self.lookups = []

    def wm_class_index(self):
        return None

    def lookup(self, identifier, wm_classes=None):
        self.lookups.append(identifier)
        argv = self.entries.get(identifier)
        if not argv:
            return None
        return fc.DesktopCommand(argv=list(argv), desktop_file=f"/apps/{identifier}.desktop")

    def best_match(self, term, measure):
        return None


class FakeInspector:
    def __init__(self, cmdlines=None):
        self.cmdlines = cmdlines or {}
        self.reads = []

    def read_cmdline(self, pid):
        self.reads.append(pid)
        return self.cmdlines.get(pid)

    def lineage(self, pid):
        return [pid]


def _write_entry(directory, name, exec_line, extra=""):
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{name}.desktop"
    path.write_text(
        "[Desktop Entry]\n"
        "Type=Application\n"
        f"Name={name}\n"
        f"Exec={exec_line}\n"
        f"{extra}",
        encoding="utf-8",
    )
    return path


# ── Resolver fallback chain ───────────────────────────────────────────────

def test_gtk_app_id_wins_over_sandboxed_app_id():
    locator = FakeLocator({
        "org.gnome.Terminal": ["gnome-terminal"],
        "org.example.Sandboxed": ["flatpak", "run", "org.example.Sandboxed"],
    })
    resolver = fc.CommandResolver(locator, FakeInspector())

    cmd = resolver.resolve(_record("gnome-terminal-server",
                                   gtk_app_id="org.gnome.Terminal",
                                   sandboxed_app_id="org.example.Sandboxed"))

    assert cmd.argv == ["gnome-terminal"]
    assert cmd.source is fc.CommandSource.GTK_APP_ID
    assert locator.lookups == ["org.gnome.Terminal"]


def test_sandboxed_app_id_used_when_gtk_id_has_no_entry():
    locator = FakeLocator({"org.mozilla.firefox": ["flatpak", "run", "org.mozilla.firefox"]})
    resolver = fc.CommandResolver(locator, FakeInspector())

    cmd = resolver.resolve(_record("firefox", gtk_app_id="org.unknown.App",
                                   sandboxed_app_id="org.mozilla.firefox"))

    assert cmd.source is fc.CommandSource.SANDBOXED_APP_ID
    assert cmd.argv == ["flatpak", "run", "org.mozilla.firefox"]


def test_window_class_then_exe_basename():
    locator = FakeLocator({"firefox": ["firefox", "--new-window"]})
    inspector = FakeInspector({4242: ["/usr/lib/firefox/firefox", "-P", "work"]})
    resolver = fc.CommandResolver(locator, inspector)

    cmd = resolver.resolve(_record("Navigator"))

    assert cmd.argv == ["firefox", "--new-window"]
    assert cmd.source is fc.CommandSource.WM_CLASS_OR_EXE
    assert locator.lookups == ["Navigator", "firefox"]


def test_raw_cmdline_is_last_resort():
    resolver = fc.CommandResolver(FakeLocator(), FakeInspector({4242: ["foo", "--bar"]}))

    cmd = resolver.resolve(_record("foo-window"))

    assert cmd.argv == ["foo", "--bar"]
    assert cmd.source is fc.CommandSource.RAW_CMDLINE


def test_missing_process_fails_with_process_gone():
    resolver = fc.CommandResolver(FakeLocator(), FakeInspector())

    with pytest.raises(fc.ResolutionFailure) as excinfo:
        resolver.resolve(_record("ghost", pid=999999))

    assert excinfo.value.reason is fc.FailureReason.PROCESS_GONE


def test_raw_cmdline_disallowed_fails_with_no_desktop_entry():
    options = fc.FindOptions(capabilities=frozenset({fc.Capability.PROC_FS_SEARCH}))
    resolver = fc.CommandResolver(FakeLocator(), FakeInspector({4242: ["foo"]}), options)

    with pytest.raises(fc.ResolutionFailure) as excinfo:
        resolver.resolve(_record("foo"))

    assert excinfo.value.reason is fc.FailureReason.NO_DESKTOP_ENTRY


def test_proc_search_disabled_never_reads_process_table():
    inspector = FakeInspector({4242: ["foo"]})
    options = fc.FindOptions(capabilities=frozenset())
    resolver = fc.CommandResolver(FakeLocator(), inspector, options)

    with pytest.raises(fc.ResolutionFailure):
        resolver.resolve(_record("foo"))

    assert inspector.reads == []


def test_fuzzy_match_finds_reverse_dns_desktop_file(tmp_path):
    apps = tmp_path / "applications"
    _write_entry(apps, "net.lutris.multimc-2", "lutris lutris:rungameid/2")
    _write_entry(apps, "org.gimp.GIMP", "gimp-2.10 %U")
    options = fc.FindOptions(capabilities=frozenset())
    resolver = fc.CommandResolver(fc.DesktopEntryLocator([str(apps)]), FakeInspector(), options)

    cmd = resolver.resolve(_record("org.multimc.MultiMC"))

    assert cmd.source is fc.CommandSource.WM_CLASS_OR_EXE
    assert cmd.argv == ["lutris", "lutris:rungameid/2"]
    assert cmd.desktop_file.endswith("net.lutris.multimc-2.desktop")


# ── Similarity ────────────────────────────────────────────────────────────

def test_partial_match_similarity_prefers_app_name_section():
    assert fc.partial_match_similarity("QjackCtl", "org.rncbc.qjackctl") > 0.8
    assert fc.partial_match_similarity("listen.tidal.com", "tidal") > 0.6
    assert fc.partial_match_similarity("Spotify", "tidal") == 0.0


def test_partial_match_similarity_ignores_short_sections():
    assert fc.partial_match_similarity("org.com", "org.com") == 0.0


# ── Desktop entries ───────────────────────────────────────────────────────

def test_lookup_strips_field_codes_and_reads_path(tmp_path):
    apps = tmp_path / "applications"
    _write_entry(apps, "org.gnome.Terminal", "gnome-terminal --window %U",
                 extra="Path=/srv/work\n")

    found = fc.DesktopEntryLocator([str(apps)]).lookup("org.gnome.Terminal")

    assert found.argv == ["gnome-terminal", "--window"]
    assert found.cwd == "/srv/work"
    assert found.desktop_file == str(apps / "org.gnome.Terminal.desktop")


def test_lookup_by_startup_wm_class(tmp_path):
    apps = tmp_path / "applications"
    _write_entry(apps, "com.jetbrains.CLion", "flatpak run com.jetbrains.CLion",
                 extra="StartupWMClass=jetbrains-clion\n")

    found = fc.DesktopEntryLocator([str(apps)]).lookup("jetbrains-clion")

    assert found.argv == ["flatpak", "run", "com.jetbrains.CLion"]


def test_lookup_prefers_earlier_location(tmp_path):
    home = tmp_path / "home" / "applications"
    system = tmp_path / "usr" / "applications"
    _write_entry(home, "firefox", "firefox --profile-manager")
    _write_entry(system, "firefox", "firefox")

    found = fc.DesktopEntryLocator([str(home), str(system)]).lookup("firefox")

    assert found.argv == ["firefox", "--profile-manager"]


def test_lookup_misses_return_none(tmp_path):
    apps = tmp_path / "applications"
    _write_entry(apps, "broken", "")

    locator = fc.DesktopEntryLocator([str(apps), str(tmp_path / "missing")])

    assert locator.lookup("broken") is None
    assert locator.lookup("nothing-here") is None
    assert locator.lookup("") is None


def test_best_match_skips_top_scoring_file_that_does_not_parse(tmp_path):
    apps = tmp_path / "applications"
    _write_entry(apps, "gedit", "")
    _write_entry(apps, "gedit-beta", "gedit --beta")

    found, score = fc.DesktopEntryLocator([str(apps)]).best_match("gedit", fc.similarity)

    assert found.argv == ["gedit", "--beta"]
    assert score < 1.0


def test_startup_wm_class_read_once_per_resolve(tmp_path, monkeypatch):
    apps = tmp_path / "applications"
    _write_entry(apps, "com.jetbrains.CLion", "flatpak run com.jetbrains.CLion",
                 extra="StartupWMClass=jetbrains-clion\n")
    _write_entry(apps, "org.gnome.gedit", "gedit")
    reads = []
    real = fc._startup_wm_class

    def _counting(path):
        reads.append(path)
        return real(path)

    monkeypatch.setattr(fc, "_startup_wm_class", _counting)
    resolver = fc.CommandResolver(fc.DesktopEntryLocator([str(apps)]), FakeInspector(),
                                  fc.FindOptions(capabilities=frozenset()))

    cmd = resolver.resolve(_record("jetbrains-clion", gtk_app_id="com.example.Missing",
                                   sandboxed_app_id="com.example.AlsoMissing"))

    assert cmd.argv == ["flatpak", "run", "com.jetbrains.CLion"]
    assert cmd.source is fc.CommandSource.WM_CLASS_OR_EXE
    assert sorted(reads) == sorted(str(p) for p in apps.iterdir())


# ── Process inspector ─────────────────────────────────────────────────────

class _FakeProcess:
    table = {}

    def __init__(self, pid):
        if pid not in self.table:
            raise psutil.NoSuchProcess(pid)
        self.pid = pid
        self._info = self.table[pid]

    def cmdline(self):
        if self._info.get("zombie"):
            raise psutil.ZombieProcess(self.pid)
        return list(self._info.get("cmdline", []))

    def exe(self):
        return self._info.get("exe", "")

    def parents(self):
        return [_FakeProcess(p) for p in self._info.get("parents", [])]


def test_read_cmdline_splits_space_stuffed_argv0(monkeypatch):
    monkeypatch.setattr(_FakeProcess, "table", {
        10: {"cmdline": ["/nonexistent/electron-app --type=renderer --lang=en"],
             "exe": "/opt/app/electron"},
    })
    monkeypatch.setattr(fc.psutil, "Process", _FakeProcess)

    args = fc.ProcessInspector().read_cmdline(10)

    assert args == ["/opt/app/electron", "--type=renderer", "--lang=en"]


def test_read_cmdline_gone_or_zombie_is_none(monkeypatch):
    monkeypatch.setattr(_FakeProcess, "table", {
        11: {"zombie": True},
        12: {"cmdline": []},
    })
    monkeypatch.setattr(fc.psutil, "Process", _FakeProcess)
    inspector = fc.ProcessInspector()

    assert inspector.read_cmdline(11) is None
    assert inspector.read_cmdline(12) is None
    assert inspector.read_cmdline(13) is None
    assert inspector.read_cmdline(0) is None


def test_lineage_lists_pid_then_ancestors(monkeypatch):
    monkeypatch.setattr(_FakeProcess, "table", {
        30: {"parents": [20, 1]},
        20: {},
        1: {},
    })
    monkeypatch.setattr(fc.psutil, "Process", _FakeProcess)

    assert fc.ProcessInspector().lineage(30) == [30, 20, 1]
    assert fc.ProcessInspector().lineage(99) == []
