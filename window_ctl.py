"""
window_ctl.py  –  Client for the WindowCtl GNOME Shell extension
================================================================

The extension exports three methods on the session bus:

  ListWindows()                      -> a((iiiib)iusss)
  SetWindowGeomByClass(s, (iiiib))   -> b
  GetNumMonitors()                   -> u

Key behaviours
  · pydbus (and through it gi) is imported lazily in connect(), so the rest
    of the package and the tests import without a running bus.
  · Every transport error surfaces as ExtensionError.  connect() raises the
    ExtensionUnavailable subclass when the extension cannot be reached at
    all; callers treat that as fatal and per-poll ExtensionError as "no data
    this time".
  · Empty gtk/sandboxed app ids are normalised to None.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

BUS_NAME    = "org.gnome.Shell"
OBJECT_PATH = "/com/github/clueliss/WindowCtl"
INTERFACE   = "com.github.clueliss.WindowCtl"


class ExtensionError(Exception):
    """A call to the window-manager extension failed."""


class ExtensionUnavailable(ExtensionError):
    """The extension could not be reached at all."""


# ══════════════════════════════════════════════════════════════════════════
#  Window types
# ══════════════════════════════════════════════════════════════════════════
@dataclass(frozen=True)
class WindowGeom:
    x: int
    y: int
    width: int
    height: int
    minimized: bool = False

    def as_struct(self) -> tuple:
        return (self.x, self.y, self.width, self.height, self.minimized)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "x":         self.x,
            "y":         self.y,
            "width":     self.width,
            "height":    self.height,
            "minimized": self.minimized,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "WindowGeom":
        return cls(
            x=int(d["x"]),
            y=int(d["y"]),
            width=int(d["width"]),
            height=int(d["height"]),
            minimized=bool(d.get("minimized", False)),
        )


@dataclass(frozen=True)
class WindowRecord:
    """One top-level window as reported by the extension."""

    window_class: str
    geometry: WindowGeom
    pid: int
    stable_sequence: int
    gtk_app_id: Optional[str] = None
    sandboxed_app_id: Optional[str] = None

    @property
    def on_screen(self) -> bool:
        return self.geometry.x >= 0 and self.geometry.y >= 0


def _opt_str(value: Any) -> Optional[str]:
    text = str(value or "").strip()
    return text or None


def window_from_struct(raw: Any) -> WindowRecord:
    """
    Build a WindowRecord from one ListWindows() element.

    pydbus hands structs over as tuples in signature order
    ((x, y, w, h, minimized), pid, stable_seq, class, gtk_id, sandboxed_id);
    mappings keyed like the session document are accepted too.
    """
    if isinstance(raw, dict):
        geom = raw.get("geometry") or raw.get("geom") or {}
        return WindowRecord(
            window_class=str(raw.get("window_class") or ""),
            geometry=WindowGeom.from_dict(geom),
            pid=int(raw.get("pid") or 0),
            stable_sequence=int(raw.get("stable_sequence", raw.get("stable_seq", 0))),
            gtk_app_id=_opt_str(raw.get("gtk_app_id")),
            sandboxed_app_id=_opt_str(raw.get("sandboxed_app_id")),
        )

    geom, pid, stable_seq, window_class, gtk_app_id, sandboxed_app_id = raw
    x, y, width, height, minimized = geom
    return WindowRecord(
        window_class=str(window_class or ""),
        geometry=WindowGeom(int(x), int(y), int(width), int(height), bool(minimized)),
        pid=int(pid),
        stable_sequence=int(stable_seq),
        gtk_app_id=_opt_str(gtk_app_id),
        sandboxed_app_id=_opt_str(sandboxed_app_id),
    )


# ══════════════════════════════════════════════════════════════════════════
#  Extension proxy
# ══════════════════════════════════════════════════════════════════════════
class WindowCtl:
    """Synchronous wrapper around the WindowCtl D-Bus proxy."""

    def __init__(self, proxy: Any) -> None:
        self._proxy = proxy

    def list_windows(self) -> List[WindowRecord]:
        try:
            raw = self._proxy.ListWindows()
        except Exception as exc:
            raise ExtensionError(f"ListWindows failed: {exc}") from exc
        try:
            return [window_from_struct(w) for w in (raw or [])]
        except (TypeError, ValueError, KeyError) as exc:
            raise ExtensionError(f"ListWindows returned malformed data: {exc}") from exc

    def move_window(self, window: WindowRecord, geom: WindowGeom) -> bool:
        """Move/resize the window and re-apply its minimised state."""
        try:
            return bool(self._proxy.SetWindowGeomByClass(window.window_class,
                                                         geom.as_struct()))
        except Exception as exc:
            raise ExtensionError(
                f"SetWindowGeomByClass({window.window_class!r}) failed: {exc}"
            ) from exc

    def num_monitors(self) -> int:
        try:
            return int(self._proxy.GetNumMonitors())
        except Exception as exc:
            raise ExtensionError(f"GetNumMonitors failed: {exc}") from exc


def _open_bus(address: Optional[str], system: bool) -> Any:
    import pydbus

    if address:
        return pydbus.connect(address)
    if system:
        return pydbus.SystemBus()
    return pydbus.SessionBus()


def connect(address: Optional[str] = None, system: bool = False) -> WindowCtl:
    """Open the bus and return a WindowCtl, probing that the extension answers."""
    try:
        bus   = _open_bus(address, system)
        proxy = bus.get(BUS_NAME, OBJECT_PATH)[INTERFACE]
    except Exception as exc:
        raise ExtensionUnavailable(
            f"cannot reach {INTERFACE} at {BUS_NAME}{OBJECT_PATH}: {exc}"
        ) from exc

    ctl = WindowCtl(proxy)
    try:
        ctl.num_monitors()
    except ExtensionError as exc:
        raise ExtensionUnavailable(str(exc)) from exc
    return ctl
