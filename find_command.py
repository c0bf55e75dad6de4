"""
find_command.py  –  Map a captured window to a launchable command
=================================================================

Fallback chain (first hit wins)
  1. gtk application id         -> desktop entry          (GtkAppId)
  2. sandboxed (flatpak) app id -> desktop entry          (SandboxedAppId)
  3. window class / exe name    -> desktop entry          (WmClassOrExeHeuristic)
       exact id or StartupWMClass, then fuzzy over every desktop file:
       difflib ratio for the class, partial-match similarity for the
       class, Chrome app site/profile and the executable name.
  4. live process cmdline                                 (RawCmdline)

Step 3 and 4 read the live process table, so resolve while the window's
process is still running.  Nothing is cached between calls.
"""

from __future__ import annotations

import math
import os
import re
import shlex
import shutil
from dataclasses import dataclass
from difflib import SequenceMatcher
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

import psutil
from xdg import BaseDirectory
from xdg.DesktopEntry import DesktopEntry
from xdg.Exceptions import ParsingError

from window_ctl import WindowRecord

# Exec= field codes that only make sense when a launcher passes files/URLs.
_FIELD_CODES = {"%f", "%F", "%u", "%U", "%i", "%c", "%k",
                "%d", "%D", "%n", "%N", "%v", "%m"}

_CHROME_APP_RE = re.compile(r"chrome-(?P<website>.+?)__.*?-(?P<profile>.+)")


class Capability:
    PROC_FS_SEARCH      = "proc-fs-search"
    USE_PROC_FS_COMMAND = "use-proc-fs-command"


DEFAULT_CAPABILITIES: FrozenSet[str] = frozenset(
    {Capability.PROC_FS_SEARCH, Capability.USE_PROC_FS_COMMAND}
)


class CommandSource(Enum):
    GTK_APP_ID       = "GtkAppId"
    SANDBOXED_APP_ID = "SandboxedAppId"
    WM_CLASS_OR_EXE  = "WmClassOrExeHeuristic"
    RAW_CMDLINE      = "RawCmdline"


class FailureReason(Enum):
    PROCESS_GONE     = "ProcessGone"
    NO_DESKTOP_ENTRY = "NoDesktopEntry"


class ResolutionFailure(Exception):
    def __init__(self, reason: FailureReason, detail: str = "") -> None:
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)
        self.reason = reason
        self.detail = detail


@dataclass(frozen=True)
class ResolvedCommand:
    argv: List[str]
    source: CommandSource
    desktop_file: Optional[str] = None
    cwd: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"argv": list(self.argv), "source": self.source.value}
        if self.desktop_file:
            d["desktop_file"] = self.desktop_file
        if self.cwd:
            d["cwd"] = self.cwd
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ResolvedCommand":
        argv = [str(a) for a in (d.get("argv") or [])]
        if not argv:
            raise ValueError("entry has an empty argv")
        return cls(
            argv=argv,
            source=CommandSource(d["source"]),
            desktop_file=d.get("desktop_file") or None,
            cwd=d.get("cwd") or None,
        )


@dataclass(frozen=True)
class DesktopCommand:
    """The launchable part of one desktop entry."""

    argv: List[str]
    desktop_file: str
    cwd: Optional[str] = None

    def resolved(self, source: CommandSource) -> ResolvedCommand:
        return ResolvedCommand(argv=list(self.argv), source=source,
                               desktop_file=self.desktop_file, cwd=self.cwd)


# ══════════════════════════════════════════════════════════════════════════
#  Similarity measures
# ══════════════════════════════════════════════════════════════════════════
def similarity(a: str, b: str) -> float:
    return SequenceMatcher(None, a, b).ratio()


def _section_similarity(term: str, n_sections: int, ix: int, section: str) -> float:
    embed_weight_offset = 0.3
    fail_threshold      = 0.6
    fail_severity       = 0.05

    sec_len  = float(len(section))
    term_len = float(len(term))

    if section.startswith(term):
        starts_with = (sec_len - math.log(sec_len - term_len + 1.0)) / sec_len
    else:
        starts_with = 0.0

    sim = similarity(term, section)
    if starts_with > 0.0:
        sim = (starts_with * (1.0 + embed_weight_offset)
               + sim * (1.0 - embed_weight_offset)) / 2.0

    length_corrected = sim * (1.0 - 1.0 / (term_len + sec_len))
    fully_corrected  = length_corrected * ((ix + 1.0) / n_sections) ** 2

    if length_corrected > fail_threshold:
        return fully_corrected
    return -fail_severity * (1.0 - fully_corrected)


def _partial_fit(term_sections: Iterable[str], sections: List[str]) -> float:
    count, total = 0, 0.0
    for term in sorted(set(term_sections)):
        for ix, section in enumerate(sections):
            if len(term) <= 3 or len(section) <= 3:
                continue
            sim = _section_similarity(term, len(sections), ix, section)
            if sim > 0.0:
                count += 1
            total += sim
    return total / count if count else 0.0


def partial_match_similarity(search_term: str, haystack: str) -> float:
    """
    Score how well the dotted/dashed sections of `search_term` fit into
    `haystack`, e.g. "org.multimc.MultiMC" vs "net.lutris.multimc-2".

    Sections later in the haystack weigh more (reverse-DNS ids put the app
    name last).  Returns 0.0 when no section pair fits at all.
    """
    term  = search_term.lower().split(".")
    hay   = haystack.lower()
    return max(_partial_fit(term, hay.split(".")),
               _partial_fit(term, hay.split("-")))


# ══════════════════════════════════════════════════════════════════════════
#  Desktop entries
# ══════════════════════════════════════════════════════════════════════════
def default_locations() -> List[str]:
    """$XDG_DATA_HOME/applications then each $XDG_DATA_DIRS/applications."""
    locations: List[str] = []
    for base in [BaseDirectory.xdg_data_home, *BaseDirectory.xdg_data_dirs]:
        path = os.path.join(base, "applications")
        if path not in locations and os.path.isdir(path):
            locations.append(path)
    return locations


def _exec_argv(exec_line: str) -> List[str]:
    try:
        parts = shlex.split(exec_line)
    except ValueError:
        return []
    return [p.replace("%%", "%") for p in parts if p not in _FIELD_CODES]


def read_desktop_entry(path: str) -> Optional[DesktopCommand]:
    try:
        entry = DesktopEntry(path)
    except (ParsingError, OSError, UnicodeDecodeError):
        return None
    argv = _exec_argv(entry.getExec() or "")
    if not argv:
        return None
    return DesktopCommand(argv=argv, desktop_file=path, cwd=entry.getPath() or None)


def _startup_wm_class(path: str) -> str:
    try:
        return DesktopEntry(path).getStartupWMClass() or ""
    except (ParsingError, OSError, UnicodeDecodeError):
        return ""


def _stem(path: str) -> str:
    name = os.path.basename(path)
    return name[:-len(".desktop")] if name.endswith(".desktop") else name


class StartupWMClassIndex:
    """StartupWMClass -> desktop files, read on first use and then kept."""

    def __init__(self, files: List[str]) -> None:
        self.files = files
        self._by_class: Optional[Dict[str, List[str]]] = None

    def paths(self, wm_class: str) -> List[str]:
        if self._by_class is None:
            self._by_class = {}
            for path in self.files:
                cls = _startup_wm_class(path).lower()
                if cls:
                    self._by_class.setdefault(cls, []).append(path)
        return self._by_class.get(wm_class.lower(), [])


class DesktopEntryLocator:
    """Find desktop entries by id, StartupWMClass, or fuzzy file name."""

    def __init__(self, locations: Optional[Iterable[str]] = None) -> None:
        self.locations = list(locations) if locations is not None else default_locations()

    def desktop_files(self) -> List[str]:
        files: List[str] = []
        for location in self.locations:
            try:
                names = sorted(os.listdir(location))
            except OSError:
                continue
            files.extend(os.path.join(location, n) for n in names
                         if n.endswith(".desktop"))
        return files

    def wm_class_index(self) -> StartupWMClassIndex:
        return StartupWMClassIndex(self.desktop_files())

    def lookup(
        self,
        identifier: str,
        wm_classes: Optional[StartupWMClassIndex] = None,
    ) -> Optional[DesktopCommand]:
        """
        Exact id, then file stem ignoring case, then StartupWMClass.

        Pass the same `wm_classes` to several lookups to read every file's
        StartupWMClass only once.
        """
        ident = (identifier or "").strip()
        if ident.endswith(".desktop"):
            ident = ident[:-len(".desktop")]
        if not ident:
            return None

        for location in self.locations:
            path = os.path.join(location, f"{ident}.desktop")
            if os.path.isfile(path):
                found = read_desktop_entry(path)
                if found:
                    return found

        files = wm_classes.files if wm_classes is not None else self.desktop_files()
        low   = ident.lower()
        for path in files:
            if _stem(path).lower() == low:
                found = read_desktop_entry(path)
                if found:
                    return found

        if wm_classes is None:
            wm_classes = StartupWMClassIndex(files)
        for path in wm_classes.paths(low):
            found = read_desktop_entry(path)
            if found:
                return found
        return None

    def best_match(
        self,
        term: str,
        measure: Callable[[str, str], float],
    ) -> Optional[Tuple[DesktopCommand, float]]:
        """Highest scoring desktop file for `term` that parses; earlier files win ties."""
        term = term.lower()
        scored = [(measure(term, _stem(path).lower()), path) for path in self.desktop_files()]
        scored.sort(key=lambda item: item[0], reverse=True)
        for score, path in scored:
            found = read_desktop_entry(path)
            if found:
                return found, score
        return None


# ══════════════════════════════════════════════════════════════════════════
#  Live process table
# ══════════════════════════════════════════════════════════════════════════
class ProcessInspector:
    def read_cmdline(self, pid: int) -> Optional[List[str]]:
        """
        Arguments of a live process, or None when it is gone or a zombie.

        Some processes rewrite argv and stuff everything into argv[0]
        separated by spaces; that form is split, and when the head is not
        an executable on disk it is replaced by the process' exe.
        """
        if pid <= 0:
            return None
        try:
            proc = psutil.Process(pid)
            args = [a for a in proc.cmdline() if a]
        except psutil.Error:
            return None
        if not args:
            return None

        if len(args) == 1 and " " in args[0]:
            args = [a for a in args[0].split(" ") if a]
            if not os.path.exists(args[0]) and not shutil.which(args[0]):
                try:
                    exe = proc.exe()
                except psutil.Error:
                    exe = ""
                if exe:
                    args[0] = exe
        return args

    def lineage(self, pid: int) -> List[int]:
        """`pid` followed by its ancestors, nearest first."""
        if pid <= 0:
            return []
        try:
            return [pid] + [p.pid for p in psutil.Process(pid).parents()]
        except psutil.Error:
            return []


# ══════════════════════════════════════════════════════════════════════════
#  Resolver
# ══════════════════════════════════════════════════════════════════════════
@dataclass(frozen=True)
class FindOptions:
    min_wm_class_similarity: float = 0.8
    min_partial_match_confidence: float = 0.6
    capabilities: FrozenSet[str] = DEFAULT_CAPABILITIES


def _search_terms(window_class: str, exe_name: str) -> List[str]:
    terms: List[str] = []
    if window_class:
        terms.append(window_class)
        m = _CHROME_APP_RE.match(window_class)
        if m:
            terms.extend([m.group("website"), m.group("profile")])
    if exe_name and (not window_class or similarity(exe_name, window_class) > 0.5):
        terms.append(exe_name)
    return terms


class CommandResolver:
    def __init__(
        self,
        locator: Optional[DesktopEntryLocator] = None,
        inspector: Optional[ProcessInspector] = None,
        options: Optional[FindOptions] = None,
    ) -> None:
        self.locator   = locator if locator is not None else DesktopEntryLocator()
        self.inspector = inspector if inspector is not None else ProcessInspector()
        self.options   = options or FindOptions()

    def resolve(self, record: WindowRecord) -> ResolvedCommand:
        wm_classes = self.locator.wm_class_index()
        if record.gtk_app_id:
            hit = self.locator.lookup(record.gtk_app_id, wm_classes)
            if hit:
                return hit.resolved(CommandSource.GTK_APP_ID)

        if record.sandboxed_app_id:
            hit = self.locator.lookup(record.sandboxed_app_id, wm_classes)
            if hit:
                return hit.resolved(CommandSource.SANDBOXED_APP_ID)

        caps = self.options.capabilities
        proc_cmdline: Optional[List[str]] = None
        if Capability.PROC_FS_SEARCH in caps:
            proc_cmdline = self.inspector.read_cmdline(record.pid)
        exe_name = os.path.basename(proc_cmdline[0]) if proc_cmdline else ""

        hit = self._find_by_heuristics(record.window_class, exe_name, wm_classes)
        if hit:
            return hit.resolved(CommandSource.WM_CLASS_OR_EXE)

        if Capability.USE_PROC_FS_COMMAND not in caps:
            raise ResolutionFailure(FailureReason.NO_DESKTOP_ENTRY,
                                    f"no desktop entry for {record.window_class!r}")
        if Capability.PROC_FS_SEARCH not in caps:
            raise ResolutionFailure(FailureReason.NO_DESKTOP_ENTRY,
                                    "process search disabled and no desktop entry found")
        if not proc_cmdline:
            raise ResolutionFailure(FailureReason.PROCESS_GONE,
                                    f"pid {record.pid} has no readable cmdline")
        return ResolvedCommand(argv=proc_cmdline, source=CommandSource.RAW_CMDLINE)

    def _find_by_heuristics(
        self,
        window_class: str,
        exe_name: str,
        wm_classes: Optional[StartupWMClassIndex] = None,
    ) -> Optional[DesktopCommand]:
        for ident in (window_class, exe_name):
            if ident:
                hit = self.locator.lookup(ident, wm_classes)
                if hit:
                    return hit

        if window_class:
            best = self.locator.best_match(window_class, similarity)
            if best and best[1] >= self.options.min_wm_class_similarity:
                return best[0]

        found: Optional[Tuple[DesktopCommand, float]] = None
        for term in _search_terms(window_class, exe_name):
            best = self.locator.best_match(term, partial_match_similarity)
            if best and (found is None or best[1] > found[1]):
                found = best
        if found and found[1] >= self.options.min_partial_match_confidence:
            return found[0]
        return None
