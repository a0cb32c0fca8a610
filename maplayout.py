"""
Map projection, marker styling and radial expansion of plant nodes.

The map engine boundary is deliberately small: project(lng, lat) -> screen
xy, add_marker(lng_lat, element), move/zoom subscription and fly_to. The
MercatorViewport below implements it in pure Python; the Streamlit page
renders whatever the viewport holds through pydeck.

Radial children are never stored with their own coordinates. Every move or
zoom event recomputes them from the parent's projected position with
radial_layout.
"""
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

LngLat = Tuple[float, float]
ScreenXY = Tuple[float, float]

TILE_SIZE = 512
MAX_LATITUDE = 85.051129
SELECT_ZOOM = 10


# =========================
# Projection + viewport
# =========================
def _world_xy(lng: float, lat: float, zoom: float) -> ScreenXY:
    scale = TILE_SIZE * (2 ** zoom)
    lat = max(-MAX_LATITUDE, min(MAX_LATITUDE, lat))
    phi = math.radians(lat)
    x = (lng + 180.0) / 360.0 * scale
    y = (1 - math.log(math.tan(phi) + 1 / math.cos(phi)) / math.pi) / 2 * scale
    return x, y


def _world_lnglat(x: float, y: float, zoom: float) -> LngLat:
    scale = TILE_SIZE * (2 ** zoom)
    lng = x / scale * 360.0 - 180.0
    n = math.pi - 2 * math.pi * y / scale
    lat = math.degrees(math.atan(math.sinh(n)))
    return lng, lat


@dataclass
class Camera:
    center: LngLat
    zoom: float


class Marker:
    def __init__(self, surface: "MercatorViewport", lng_lat: LngLat, element: "MarkerElement"):
        self.surface = surface
        self.lng_lat = lng_lat
        self.element = element

    def remove(self) -> None:
        self.surface._remove_marker(self)


class MercatorViewport:
    """Web-Mercator camera with the marker and event surface the map core needs."""

    EVENTS = ("move", "zoom")

    def __init__(self, center: LngLat = (20.0, 20.0), zoom: float = 2.0, width: int = 1200, height: int = 700):
        self.center = center
        self.zoom = float(zoom)
        self.width = width
        self.height = height
        self.markers: List[Marker] = []
        self._listeners: Dict[str, List[Callable[[], None]]] = {e: [] for e in self.EVENTS}

    # --- projection
    def project(self, lng: float, lat: float) -> ScreenXY:
        cx, cy = _world_xy(self.center[0], self.center[1], self.zoom)
        x, y = _world_xy(lng, lat, self.zoom)
        return x - cx + self.width / 2, y - cy + self.height / 2

    def unproject(self, x: float, y: float) -> LngLat:
        cx, cy = _world_xy(self.center[0], self.center[1], self.zoom)
        return _world_lnglat(x + cx - self.width / 2, y + cy - self.height / 2, self.zoom)

    # --- events
    def on(self, event: str, handler: Callable[[], None]) -> Callable[[], None]:
        if event not in self._listeners:
            raise ValueError(f"unknown map event {event!r}")
        self._listeners[event].append(handler)
        return lambda: self.off(event, handler)

    def off(self, event: str, handler: Callable[[], None]) -> None:
        handlers = self._listeners.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def listener_count(self, event: Optional[str] = None) -> int:
        if event:
            return len(self._listeners.get(event, []))
        return sum(len(h) for h in self._listeners.values())

    def _emit(self, event: str) -> None:
        for handler in list(self._listeners[event]):
            handler()

    # --- camera
    @property
    def camera(self) -> Camera:
        return Camera(center=self.center, zoom=self.zoom)

    def fly_to(self, center: LngLat, zoom: Optional[float] = None) -> None:
        zoom_changed = zoom is not None and float(zoom) != self.zoom
        self.center = (float(center[0]), float(center[1]))
        if zoom is not None:
            self.zoom = float(zoom)
        self._emit("move")
        if zoom_changed:
            self._emit("zoom")

    def pan_by(self, dx: float, dy: float) -> None:
        cx, cy = self.width / 2 + dx, self.height / 2 + dy
        self.fly_to(self.unproject(cx, cy))

    def set_zoom(self, zoom: float) -> None:
        self.fly_to(self.center, zoom)

    # --- markers
    def add_marker(self, lng_lat: LngLat, element: "MarkerElement") -> Marker:
        m = Marker(self, (float(lng_lat[0]), float(lng_lat[1])), element)
        self.markers.append(m)
        return m

    def _remove_marker(self, marker: Marker) -> None:
        if marker in self.markers:
            self.markers.remove(marker)


# =========================
# Visual encoding
# =========================
class NodeKind(str, Enum):
    GLOBAL = "global"
    PROJECT = "project"
    TRANSACTION = "transaction"


STATUS_COLORS = {
    "Operating": "#10b981",
    "operating": "#10b981",
    "Retired": "#f59e0b",
    "Planning": "#3b82f6",
}
DEFAULT_STATUS_COLOR = "#6b7280"

RAG_COLORS = {
    "green": "#10b981",
    "amber": "#f59e0b",
    "red": "#ef4444",
    "closed": "#6b7280",
}
DEFAULT_LINE_COLOR = "#9ca3af"
NEW_MARKER_BORDER = "3px solid #3b82f6"


@dataclass(frozen=True)
class MarkerStyle:
    shape: str           # circle / triangle-up
    color: str
    opacity: float
    size: int
    border: str
    label: str = ""


def status_color(status: str) -> str:
    return STATUS_COLORS.get(status or "", DEFAULT_STATUS_COLOR)


def line_color(status: str) -> str:
    return RAG_COLORS.get((status or "").strip().lower(), DEFAULT_LINE_COLOR)


def marker_style(kind: NodeKind, status: str = "", newly_added: bool = False) -> MarkerStyle:
    kind = NodeKind(kind)
    if kind is NodeKind.GLOBAL:
        return MarkerStyle("circle", status_color(status), 0.5, 16, "1px solid white")
    if kind is NodeKind.PROJECT:
        border = NEW_MARKER_BORDER if newly_added else "3px solid white"
        return MarkerStyle("triangle-up", status_color(status), 1.0, 30, border)
    label = (status or "").strip()[:1].upper()
    return MarkerStyle("circle", line_color(status), 1.0, 20, "2px solid white", label=label)


@dataclass
class MarkerElement:
    kind: NodeKind
    key: str
    style: MarkerStyle
    data: Any = None


LEGEND_BUCKETS = ("Operating", "Retired", "Planning")


def legend_counts(statuses: Iterable[str]) -> Dict[str, int]:
    counts = {b: 0 for b in LEGEND_BUCKETS}
    counts["Other/Unknown"] = 0
    total = 0
    for s in statuses:
        total += 1
        if s in counts and s != "Other/Unknown":
            counts[s] += 1
        else:
            counts["Other/Unknown"] += 1
    counts["Total"] = total
    return counts


# =========================
# Radial layout
# =========================
def radial_radius(count: int) -> float:
    return 80 + 10 * count


def radial_layout(parent_xy: ScreenXY, count: int) -> List[ScreenXY]:
    """Child i sits at angle 2*pi*i/count - pi/2 (child 0 straight up)."""
    if count <= 0:
        return []
    px, py = parent_xy
    r = radial_radius(count)
    out = []
    for i in range(count):
        theta = 2 * math.pi * i / count - math.pi / 2
        out.append((px + r * math.cos(theta), py + r * math.sin(theta)))
    return out


@dataclass
class ChildNode:
    key: str
    status: str
    style: MarkerStyle
    data: Any = None
    position: ScreenXY = (0.0, 0.0)


@dataclass
class ConnectingLine:
    start: ScreenXY
    end: ScreenXY
    color: str


# =========================
# Shared UI state
# =========================
class MapState:
    """
    Single source of truth for map UI state. Deferred work must hold this
    object and re-read it, never a copied value.
    """

    def __init__(self):
        self.expanded_key: Optional[str] = None
        self.selected_key: Optional[str] = None
        self.previous_view: Optional[Camera] = None
        self.global_visible: bool = False
        self.global_token: int = 0

    def set_expanded(self, key: Optional[str]) -> None:
        self.expanded_key = key

    def set_selected(self, key: Optional[str]) -> None:
        self.selected_key = key

    def set_previous_view(self, camera: Optional[Camera]) -> None:
        self.previous_view = camera

    def show_global(self) -> int:
        self.global_token += 1
        self.global_visible = True
        return self.global_token

    def hide_global(self) -> None:
        # bumping the token invalidates any batch job still running
        self.global_token += 1
        self.global_visible = False


# =========================
# Expansion
# =========================
class ExpansionController:
    """Expands at most one plant node at a time into a ring of child nodes."""

    def __init__(self, surface: MercatorViewport, state: MapState):
        self.surface = surface
        self.state = state
        self.children: List[ChildNode] = []
        self.lines: List[ConnectingLine] = []
        self._parent: Optional[LngLat] = None
        self._unsubscribe: List[Callable[[], None]] = []

    @property
    def is_expanded(self) -> bool:
        return self.state.expanded_key is not None

    def toggle(self, key: str, parent: LngLat, children: Sequence[ChildNode]) -> bool:
        """Returns True when the node ends up expanded."""
        if self.state.expanded_key == key:
            self.collapse()
            return False
        self.collapse()
        self._expand(key, parent, children)
        return True

    def _expand(self, key: str, parent: LngLat, children: Sequence[ChildNode]) -> None:
        self.state.set_expanded(key)
        self._parent = parent
        self.children = list(children)

        def on_view_change():
            if self.state.expanded_key != key:
                # stale handler from a replaced expansion
                self._detach()
                return
            self.redraw()

        for event in MercatorViewport.EVENTS:
            self._unsubscribe.append(self.surface.on(event, on_view_change))
        self.redraw()
        logger.debug("expanded %s into %d children", key, len(self.children))

    def redraw(self) -> None:
        if self._parent is None:
            return
        parent_xy = self.surface.project(*self._parent)
        positions = radial_layout(parent_xy, len(self.children))
        self.lines = []
        for child, pos in zip(self.children, positions):
            child.position = pos
            self.lines.append(ConnectingLine(parent_xy, pos, line_color(child.status)))

    def _detach(self) -> None:
        for unsub in self._unsubscribe:
            unsub()
        self._unsubscribe = []

    def collapse(self) -> None:
        self._detach()
        self.children = []
        self.lines = []
        self._parent = None
        self.state.set_expanded(None)

    def select(self, key: str, lng_lat: LngLat) -> None:
        """Select a node: remember the camera and fly to it. A different node collapses any expansion."""
        if self.state.expanded_key is not None and self.state.expanded_key != key:
            self.collapse()
        self.state.set_previous_view(self.surface.camera)
        self.state.set_selected(key)
        self.surface.fly_to(lng_lat, SELECT_ZOOM)

    def close_selection(self) -> None:
        prev = self.state.previous_view
        self.state.set_selected(None)
        if prev is not None:
            self.surface.fly_to(prev.center, prev.zoom)
            self.state.set_previous_view(None)

    def unmount(self) -> None:
        self.collapse()
        self.state.set_selected(None)


# =========================
# Batched marker insertion
# =========================
class GlobalMarkerLayer:
    """
    Adds large marker sets in batches with a short yield between batches.
    Hiding the layer mid-run stops the remaining batches.

    The check between batches only sees changes made while show() is
    sleeping, i.e. from another thread or the sleep hook. Inside a single
    Streamlit script run nothing else touches the state, so there show()
    always completes. An interaction during the spinner makes Streamlit
    abandon the run at its next st call, and the rerun's hide() or show()
    replaces the markers.
    """

    def __init__(self, surface: MercatorViewport, state: MapState, batch_size: int = 100, pause: float = 0.01,
                 sleep: Callable[[float], None] = time.sleep):
        self.surface = surface
        self.state = state
        self.batch_size = batch_size
        self.pause = pause
        self.sleep = sleep
        self.markers: List[Marker] = []

    def show(self, items: Sequence[Tuple[LngLat, MarkerElement]]) -> int:
        self.clear()
        token = self.state.show_global()
        added = 0
        for start in range(0, len(items), self.batch_size):
            if not self.state.global_visible or self.state.global_token != token:
                logger.info("marker batch cancelled after %d of %d markers", added, len(items))
                return added
            for lng_lat, element in items[start:start + self.batch_size]:
                self.markers.append(self.surface.add_marker(lng_lat, element))
                added += 1
            if start + self.batch_size < len(items):
                self.sleep(self.pause)
        return added

    def hide(self) -> None:
        self.state.hide_global()
        self.clear()

    def clear(self) -> None:
        for m in self.markers:
            m.remove()
        self.markers = []
