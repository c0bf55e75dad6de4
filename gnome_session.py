"""
gnome_session.py  –  Save & restore GNOME desktop sessions
==========================================================

Document: a JSON array, one object per window, in capture order.

Key behaviours
  · Capture takes ONE ListWindows() snapshot, drops windows with a negative
    origin (off-screen / special surfaces) and resolves every other window
    to a command right away, while its process is still alive.  Windows
    that cannot be resolved are dropped with a warning.
  · Restore launches every saved command detached, then polls the shell
    extension until each launched entry's window shows up or the timeout
    runs out.  Windows open before the launch are never candidates.
  · Matching is by window class.  When several new windows share a class,
    the one whose process descends from the pid launched for that entry
    wins; otherwise enumeration order decides (best effort only).
  · One live window satisfies at most one saved entry.
  · A timed-out entry is an expected outcome (apps without a WM class,
    fullscreen windows that refuse to move), reported, never retried.
  · Partial restore is success: exit code is 0 unless the document itself
    cannot be read.
"""

from __future__ import annotations

import argparse
import json
import os
import shlex
import subprocess
import sys
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, TextIO

from xdg import BaseDirectory

from find_command import (
    DEFAULT_CAPABILITIES,
    CommandResolver,
    DesktopEntryLocator,
    FindOptions,
    ProcessInspector,
    ResolutionFailure,
    ResolvedCommand,
    default_locations,
)
from window_ctl import (
    ExtensionError,
    ExtensionUnavailable,
    WindowCtl,
    WindowGeom,
    WindowRecord,
    connect,
)

CONFIG_NAME = os.path.join("gnome-session-restore", "config.json")


class SessionFileError(Exception):
    """The session document could not be read, parsed or written."""


# ══════════════════════════════════════════════════════════════════════════
#  Tiny helpers
# ══════════════════════════════════════════════════════════════════════════
def _now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S")

def _warn(msg: str) -> None:
    print(f"  [warn] {msg}", file=sys.stderr)

def format_argv(argv: Iterable[str]) -> str:
    return " ".join(shlex.quote(a) for a in argv)


# ══════════════════════════════════════════════════════════════════════════
#  Config
# ══════════════════════════════════════════════════════════════════════════
@dataclass
class Config:
    min_wm_class_similarity: float = 0.8
    min_partial_match_confidence: float = 0.6
    capabilities: FrozenSet[str] = DEFAULT_CAPABILITIES
    match_timeout: float = 10.0
    poll_interval: float = 0.5
    monitor_width: int = 1920
    desktop_entry_dirs: List[str] = field(default_factory=list)

    def find_options(self) -> FindOptions:
        return FindOptions(
            min_wm_class_similarity=self.min_wm_class_similarity,
            min_partial_match_confidence=self.min_partial_match_confidence,
            capabilities=self.capabilities,
        )


def default_config_path() -> str:
    return os.path.join(BaseDirectory.xdg_config_home, CONFIG_NAME)


def load_config(path: Optional[str] = None) -> Config:
    """Read the JSON config; a missing file means defaults, a broken one warns."""
    path = path or default_config_path()
    if not os.path.exists(path):
        return Config()
    try:
        with open(path, encoding="utf-8") as f:
            d = json.load(f)
    except (OSError, ValueError) as exc:
        _warn(f"ignoring config {path}: {exc}")
        return Config()
    if not isinstance(d, dict):
        _warn(f"ignoring config {path}: expected a JSON object")
        return Config()

    cfg = Config()
    try:
        for key in ("min_wm_class_similarity", "min_partial_match_confidence",
                    "match_timeout"):
            if key in d:
                setattr(cfg, key, max(0.0, float(d[key])))
        if "poll_interval" in d:
            cfg.poll_interval = max(0.05, float(d["poll_interval"]))
        if "monitor_width" in d:
            cfg.monitor_width = int(d["monitor_width"])
        if "desktop_entry_dirs" in d:
            cfg.desktop_entry_dirs = [os.path.expanduser(str(p))
                                      for p in d["desktop_entry_dirs"]]
        if "capabilities" in d:
            caps = set()
            for cap in d["capabilities"]:
                if cap in DEFAULT_CAPABILITIES:
                    caps.add(cap)
                else:
                    _warn(f"unknown capability {cap!r} in {path}")
            cfg.capabilities = frozenset(caps)
    except (TypeError, ValueError) as exc:
        _warn(f"ignoring config {path}: {exc}")
        return Config()
    return cfg


# ══════════════════════════════════════════════════════════════════════════
#  Session document
# ══════════════════════════════════════════════════════════════════════════
@dataclass(frozen=True)
class SessionEntry:
    record: WindowRecord
    command: ResolvedCommand


def entry_to_dict(entry: SessionEntry) -> Dict[str, Any]:
    r = entry.record
    d: Dict[str, Any] = {
        "window_class":    r.window_class,
        "geometry":        r.geometry.to_dict(),
        "pid":             r.pid,
        "stable_sequence": r.stable_sequence,
    }
    if r.gtk_app_id:
        d["gtk_app_id"] = r.gtk_app_id
    if r.sandboxed_app_id:
        d["sandboxed_app_id"] = r.sandboxed_app_id
    d.update(entry.command.to_dict())
    return d


def entry_from_dict(d: Dict[str, Any]) -> SessionEntry:
    record = WindowRecord(
        window_class=str(d.get("window_class") or ""),
        geometry=WindowGeom.from_dict(d["geometry"]),
        pid=int(d.get("pid") or 0),
        stable_sequence=int(d.get("stable_sequence") or 0),
        gtk_app_id=d.get("gtk_app_id") or None,
        sandboxed_app_id=d.get("sandboxed_app_id") or None,
    )
    return SessionEntry(record=record, command=ResolvedCommand.from_dict(d))


def dump_session(entries: List[SessionEntry]) -> str:
    return json.dumps([entry_to_dict(e) for e in entries], indent=2, ensure_ascii=False)


def parse_session(text: str) -> List[SessionEntry]:
    try:
        data = json.loads(text)
    except ValueError as exc:
        raise SessionFileError(f"not valid JSON: {exc}") from exc
    if not isinstance(data, list):
        raise SessionFileError("expected a JSON array of windows")
    entries: List[SessionEntry] = []
    for i, item in enumerate(data):
        if not isinstance(item, dict):
            raise SessionFileError(f"entry {i} is not an object")
        try:
            entries.append(entry_from_dict(item))
        except (KeyError, TypeError, ValueError) as exc:
            raise SessionFileError(f"entry {i} is malformed: {exc!r}") from exc
    return entries


def load_session(path: str) -> List[SessionEntry]:
    """Read a session document; "-" reads stdin."""
    try:
        if path == "-":
            text = sys.stdin.read()
        else:
            with open(path, encoding="utf-8") as f:
                text = f.read()
    except OSError as exc:
        raise SessionFileError(f"cannot read {path}: {exc}") from exc
    return parse_session(text)


def save_session(path: str, entries: List[SessionEntry]) -> None:
    """Write a session document; "-" writes stdout."""
    text = dump_session(entries)
    try:
        if path == "-":
            sys.stdout.write(text + "\n")
            sys.stdout.flush()
            return
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(text + "\n")
    except OSError as exc:
        raise SessionFileError(f"cannot write {path}: {exc}") from exc


# ══════════════════════════════════════════════════════════════════════════
#  Capture
# ══════════════════════════════════════════════════════════════════════════
def capture_session(
    ctl: WindowCtl,
    resolver: CommandResolver,
    verbose: bool = False,
    out: Optional[TextIO] = None,
) -> List[SessionEntry]:
    out = out or sys.stdout
    try:
        windows = ctl.list_windows()
    except ExtensionError as exc:
        raise ExtensionUnavailable(str(exc)) from exc

    entries: List[SessionEntry] = []
    for w in windows:
        if not w.on_screen:
            if verbose:
                print(f"  SKIP    [seq={w.stable_sequence}] {w.window_class or '?'} "
                      f"off-screen at ({w.geometry.x},{w.geometry.y})", file=out)
            continue
        try:
            command = resolver.resolve(w)
        except ResolutionFailure as exc:
            _warn(f"dropping {w.window_class or '?'} (pid {w.pid}): {exc}")
            continue
        if verbose:
            print(f"  CAPTURE [seq={w.stable_sequence}] {w.window_class or '?'} "
                  f"from {command.source.value}: {format_argv(command.argv)}", file=out)
        entries.append(SessionEntry(record=w, command=command))
    return entries


# ══════════════════════════════════════════════════════════════════════════
#  Launch
# ══════════════════════════════════════════════════════════════════════════
def launch_command(command: ResolvedCommand) -> int:
    """Start `command` detached from us; raises OSError when it cannot start."""
    cwd = command.cwd if command.cwd and os.path.isdir(command.cwd) else None
    proc = subprocess.Popen(
        command.argv,
        cwd=cwd,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
    return proc.pid


# ══════════════════════════════════════════════════════════════════════════
#  Window matching
# ══════════════════════════════════════════════════════════════════════════
class MatchState(Enum):
    PENDING   = "Pending"
    MATCHED   = "Matched"
    TIMED_OUT = "TimedOut"


@dataclass
class PendingMatch:
    record: WindowRecord
    launched_pid: int = 0
    state: MatchState = MatchState.PENDING
    window: Optional[WindowRecord] = None


def fit_to_monitors(geom: WindowGeom, monitor_count: int, monitor_width: int) -> WindowGeom:
    """On a single monitor, shift a window saved on a wider layout back into view."""
    if monitor_count >= 2:
        return geom
    overflow = geom.x + geom.width - monitor_width
    if overflow <= 0:
        return geom
    return replace(geom, x=max(0, geom.x - overflow))


def _print_diag(record: WindowRecord, ranked: List[Dict], top_n: int = 3) -> None:
    print(f"[DIAG] Target: class={record.window_class or '?'}  "
          f"seq={record.stable_sequence}")
    if not ranked:
        print("[DIAG]   No candidates")
        return
    for i, item in enumerate(ranked[:max(1, top_n)], 1):
        c  = item["candidate"]
        co = item["components"]
        print(
            f"[DIAG]   #{i} seq={c.stable_sequence} pid={c.pid} score={item['score']} "
            f"(class={co['class']} lineage={co['lineage']})"
        )


class WindowMatcher:
    """
    Bind launched entries to the windows that appear for them.

    Every poll lists the live windows, ranks the unconsumed ones per pending
    entry and moves the winner to the saved geometry.  A failed poll or move
    ends that cycle only, and a refused move leaves the entry pending.  The
    loop goes on until everything matched or `timeout` seconds passed.
    """

    def __init__(
        self,
        ctl: WindowCtl,
        timeout: float = 10.0,
        poll_interval: float = 0.5,
        lineage: Optional[Callable[[int], List[int]]] = None,
        known_windows: Iterable[WindowRecord] = (),
        monitor_count: int = 2,
        monitor_width: int = 1920,
        diagnostics: bool = False,
        verbose: bool = False,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.ctl           = ctl
        self.timeout       = timeout
        self.poll_interval = poll_interval
        self.lineage       = lineage if lineage is not None else ProcessInspector().lineage
        self.consumed      = {w.stable_sequence for w in known_windows}
        self.monitor_count = monitor_count
        self.monitor_width = monitor_width
        self.diagnostics   = diagnostics
        self.verbose       = verbose
        self.clock         = clock
        self.sleep         = sleep
        self.polls         = 0

    def run(self, pending: List[PendingMatch]) -> List[PendingMatch]:
        deadline = self.clock() + self.timeout
        while True:
            waiting = [p for p in pending if p.state is MatchState.PENDING]
            if not waiting:
                break
            self.polls += 1
            try:
                observed = self.ctl.list_windows()
            except ExtensionError as exc:
                _warn(f"poll {self.polls} failed: {exc}")
            else:
                self._match_poll(waiting, observed)
                if all(p.state is MatchState.MATCHED for p in waiting):
                    break
            now = self.clock()
            if now >= deadline:
                break
            self.sleep(min(self.poll_interval, deadline - now))

        for p in pending:
            if p.state is MatchState.PENDING:
                p.state = MatchState.TIMED_OUT
                if self.diagnostics:
                    _print_diag(p.record, [])
        return pending

    def _rank_candidates(
        self,
        p: PendingMatch,
        observed: List[WindowRecord],
        other_pids: Iterable[int] = (),
    ) -> List[Dict]:
        """
        Same class only.  Descendants of the launched pid score higher, and
        descendants of another pending launch are left to that launch; the
        stable sort keeps enumeration order among equals.
        """
        others = {pid for pid in other_pids if pid and pid != p.launched_pid}
        ranked = []
        for w in observed:
            if w.window_class != p.record.window_class:
                continue
            ancestors = self.lineage(w.pid)
            comps = {"class": 15, "lineage": 0}
            if p.launched_pid and p.launched_pid in ancestors:
                comps["lineage"] = 50
            elif others.intersection(ancestors):
                continue
            ranked.append({"candidate": w, "score": sum(comps.values()),
                           "components": comps})
        ranked.sort(key=lambda x: x["score"], reverse=True)
        return ranked

    def _match_poll(self, waiting: List[PendingMatch], observed: List[WindowRecord]) -> None:
        fresh = [w for w in observed if w.stable_sequence not in self.consumed]
        for p in waiting:
            if not p.record.window_class:
                continue
            other_pids = [o.launched_pid for o in waiting
                          if o is not p and o.state is MatchState.PENDING]
            ranked = self._rank_candidates(p, fresh, other_pids)
            if not ranked:
                continue
            if self.diagnostics:
                _print_diag(p.record, ranked)
            best = ranked[0]["candidate"]
            geom = fit_to_monitors(p.record.geometry, self.monitor_count, self.monitor_width)
            try:
                moved = self.ctl.move_window(best, geom)
            except ExtensionError as exc:
                _warn(f"moving {best.window_class} failed: {exc}")
                return
            if not moved:
                _warn(f"extension found no window of class {best.window_class!r} to move")
                continue

            self.consumed.add(best.stable_sequence)
            fresh = [w for w in fresh if w.stable_sequence != best.stable_sequence]
            p.state  = MatchState.MATCHED
            p.window = best
            if self.verbose:
                min_note = " minimized" if geom.minimized else ""
                print(f"  MATCH   {best.window_class} seq={best.stable_sequence} "
                      f"pid={best.pid} -> {geom.x},{geom.y} "
                      f"{geom.width}x{geom.height}{min_note}")


# ══════════════════════════════════════════════════════════════════════════
#  Restore
# ══════════════════════════════════════════════════════════════════════════
class Outcome(Enum):
    LAUNCHED        = "Launched"
    LAUNCH_FAILED   = "LaunchFailed"
    MATCHED         = "Matched"
    MATCH_TIMED_OUT = "MatchTimedOut"


@dataclass
class EntryOutcome:
    entry: SessionEntry
    outcome: Outcome
    pid: int = 0
    window: Optional[WindowRecord] = None
    detail: str = ""


@dataclass
class RestoreReport:
    outcomes: List[EntryOutcome] = field(default_factory=list)

    def count(self, outcome: Outcome) -> int:
        return sum(1 for o in self.outcomes if o.outcome is outcome)

    def summary(self) -> str:
        return (
            f"Restore complete. "
            f"Matched={self.count(Outcome.MATCHED)}, "
            f"TimedOut={self.count(Outcome.MATCH_TIMED_OUT)}, "
            f"LaunchFailed={self.count(Outcome.LAUNCH_FAILED)}, "
            f"Total={len(self.outcomes)}"
        )


def restore_session(
    entries: List[SessionEntry],
    ctl: WindowCtl,
    launcher: Callable[[ResolvedCommand], int] = launch_command,
    timeout: float = 10.0,
    poll_interval: float = 0.5,
    monitor_width: int = 1920,
    lineage: Optional[Callable[[int], List[int]]] = None,
    diagnostics: bool = False,
    verbose: bool = False,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> RestoreReport:
    try:
        known = ctl.list_windows()
    except ExtensionError as exc:
        raise ExtensionUnavailable(str(exc)) from exc
    try:
        monitors = ctl.num_monitors()
    except ExtensionError:
        monitors = 2

    report = RestoreReport()
    pending: List[PendingMatch] = []
    for entry in entries:
        try:
            pid = launcher(entry.command)
        except OSError as exc:
            _warn(f"failed to launch {format_argv(entry.command.argv)}: {exc}")
            report.outcomes.append(EntryOutcome(entry, Outcome.LAUNCH_FAILED,
                                                detail=str(exc)))
            continue
        if verbose:
            print(f"  LAUNCH  pid={pid} {format_argv(entry.command.argv)}")
        report.outcomes.append(EntryOutcome(entry, Outcome.LAUNCHED, pid=pid))
        pending.append(PendingMatch(record=entry.record, launched_pid=pid))

    matcher = WindowMatcher(
        ctl,
        timeout=timeout,
        poll_interval=poll_interval,
        lineage=lineage,
        known_windows=known,
        monitor_count=monitors,
        monitor_width=monitor_width,
        diagnostics=diagnostics,
        verbose=verbose,
        clock=clock,
        sleep=sleep,
    )
    matcher.run(pending)

    launched = [o for o in report.outcomes if o.outcome is Outcome.LAUNCHED]
    for o, p in zip(launched, pending):
        if p.state is MatchState.MATCHED:
            o.outcome = Outcome.MATCHED
            o.window  = p.window
        else:
            o.outcome = Outcome.MATCH_TIMED_OUT
    return report


def finish_session_file(path: str, rm: bool = False, mark: bool = False) -> Optional[str]:
    """Apply --mark / --rm after a restore; returns where the file now lives."""
    if mark:
        root, _ = os.path.splitext(path)
        marked  = f"{root}.{_now()}"
        os.rename(path, marked)
        path = marked
    if rm:
        os.remove(path)
        return None
    return path


# ══════════════════════════════════════════════════════════════════════════
#  CLI entry point
# ══════════════════════════════════════════════════════════════════════════
def _make_resolver(cfg: Config) -> CommandResolver:
    locator = DesktopEntryLocator(cfg.desktop_entry_dirs + default_locations())
    return CommandResolver(locator, ProcessInspector(), cfg.find_options())


def _cmd_save(args: argparse.Namespace, path: str, cfg: Config) -> int:
    out = sys.stderr if path == "-" else sys.stdout
    ctl = connect(args.dbus_address, system=args.bus == "system")
    entries = capture_session(ctl, _make_resolver(cfg), verbose=args.verbose, out=out)
    if not entries:
        _warn("no resolvable windows, nothing saved")
        return 1
    try:
        save_session(path, entries)
    except SessionFileError as exc:
        _warn(str(exc))
        return 1
    print(f"Saved {len(entries)} windows -> {path}", file=out)
    return 0


def _cmd_restore(args: argparse.Namespace, path: str, cfg: Config) -> int:
    try:
        entries = load_session(path)
    except SessionFileError as exc:
        _warn(str(exc))
        return 1

    ctl = connect(args.dbus_address, system=args.bus == "system")
    report = restore_session(
        entries, ctl,
        launcher=launch_command,
        timeout=args.timeout if args.timeout is not None else cfg.match_timeout,
        poll_interval=cfg.poll_interval,
        monitor_width=cfg.monitor_width,
        diagnostics=args.diagnostics,
        verbose=args.verbose,
    )
    print(report.summary())
    if report.count(Outcome.MATCH_TIMED_OUT):
        print("  Timed out: no new window with that class appeared, or it refused to move.")

    if path != "-" and (args.rm or args.mark):
        try:
            finish_session_file(path, rm=args.rm, mark=args.mark)
        except OSError as exc:
            _warn(f"could not clean up {path}: {exc}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    p = argparse.ArgumentParser(
        prog="gnome-session-restore",
        description="Save/restore GNOME desktop sessions.",
    )
    p.add_argument("--config", help="JSON config (default: %(default)s)",
                   default=default_config_path())
    bus = p.add_mutually_exclusive_group()
    bus.add_argument("--dbus-address", help="Connect to the specified D-Bus address")
    bus.add_argument("--session", dest="bus", action="store_const", const="session",
                     help="Connect to the session D-Bus [default]")
    bus.add_argument("--system", dest="bus", action="store_const", const="system",
                     help="Connect to the system D-Bus")
    p.set_defaults(bus="session")
    p.add_argument("--verbose", "-v", action="store_true")
    s = p.add_subparsers(dest="cmd", required=True)

    sp = s.add_parser("save", help="Save the current session")
    sp.add_argument("--file", "-f", dest="path", required=True,
                    help="Session file ('-' for stdout)")

    sp = s.add_parser("restore", help="Relaunch a saved session and place its windows")
    sp.add_argument("--file", "-f", dest="path", required=True,
                    help="Session file ('-' for stdin)")
    sp.add_argument("--rm", action="store_true",
                    help="Remove the session file after restoring")
    sp.add_argument("--mark", action="store_true",
                    help="Rename the session file with the current timestamp after restoring")
    sp.add_argument("--timeout", type=float, default=None,
                    help="Seconds to wait for launched windows")
    sp.add_argument("--diagnostics", action="store_true")

    args = p.parse_args(argv)
    cfg  = load_config(args.config)
    path = args.path if args.path == "-" else os.path.expanduser(args.path)

    try:
        if args.cmd == "save":
            return _cmd_save(args, path, cfg)
        return _cmd_restore(args, path, cfg)
    except ExtensionUnavailable as exc:
        _warn(f"window-manager extension unavailable: {exc}")
        return 2
    except KeyboardInterrupt:
        print("Interrupted; launched applications are left running.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
