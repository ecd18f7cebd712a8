"""
Skill Gantt
Builds the month-grid view of a role-readiness skill plan: one row per skill,
one column per month, with summary cards, a cursor-following topics tooltip,
and per-month learning topics fetched lazily from the blueprint API.

Features:
  - Plan normalisation that never raises on malformed API payloads
  - Month-range projection with Start / End / Target segment hints
  - Deterministic row colours (type palettes + golden-angle hue rotation)
  - Viewport-clamped tooltip placement
  - Topic cache with in-flight de-duplication and concurrent prefetch
  - PNG chart, console summary, Excel learning-plan export
"""

import argparse
import asyncio
import colorsys
import json
import math
import numbers
import os
import re
import sys
from datetime import datetime
from urllib.parse import quote

import aiohttp
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import matplotlib.colors as mcolors
import matplotlib.patches as mpatches
from matplotlib.patches import FancyBboxPatch
import numpy as np
import pandas as pd
from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill, Alignment, Border, Side
from openpyxl.worksheet.datavalidation import DataValidation


# ── Constants ────────────────────────────────────────────────────────────────

_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_TEMPLATE = os.path.join(_DIR, "skill_plan.xlsx")
DEFAULT_OUTDIR = os.path.join(_DIR, "output")

DEFAULT_API_BASE = "http://localhost:8080"
DEFAULT_TIMEOUT_SECONDS = 10

DEFAULT_TOTAL_MONTHS = 6
MIN_DURATION_MONTHS = 3
MAX_DURATION_MONTHS = 24

# Browser-ish default used when no viewport is supplied
DEFAULT_VIEWPORT = (1280, 800)

TOOLTIP_WIDTH = 320
TOOLTIP_ESTIMATED_HEIGHT = 220
TOOLTIP_GAP = 12
TOOLTIP_MARGIN = 10

TASK_TYPES = ["technical", "non-technical"]
ROW_TYPE_LABELS = {"technical": "Technical", "non-technical": "Non-Technical"}
DEFAULT_ROW_TYPE = "Task"
UNNAMED_TASK = "Unnamed Task"

TECHNICAL_COLORS = [
    "#3B82F6",  # blue-500
    "#10B981",  # emerald-500
    "#F59E0B",  # amber-500
    "#8B5CF6",  # violet-500
    "#EC4899",  # pink-500
]

NON_TECHNICAL_COLORS = [
    "#6366F1",  # indigo-500
    "#EF4444",  # red-500
    "#14B8A6",  # teal-500
    "#F97316",  # orange-500
    "#06B6D4",  # cyan-500
]

GOLDEN_ANGLE = 137.5

MONTH_NAMES = ["Jan", "Feb", "Mar", "Apr", "May", "Jun",
               "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]

SEGMENT_STYLES = {
    # (is_start, is_end) -> label, rounding, CSS border radius
    (True, True): {"label": "Target", "rounding": "full", "border_radius": "0.5rem"},
    (True, False): {"label": "Start", "rounding": "left", "border_radius": "0.5rem 0 0 0.5rem"},
    (False, True): {"label": "End", "rounding": "right", "border_radius": "0 0.5rem 0.5rem 0"},
    (False, False): {"label": "", "rounding": "none", "border_radius": "0"},
}

NO_DATA_MESSAGE = "No Gantt chart data available"
NO_TIMELINE_MESSAGE = "Unable to generate timeline"
NO_TOPICS_MESSAGE = "No topics available for this month"
LOADING_TOPICS_MESSAGE = "Loading topics..."
TOPICS_PENDING_MESSAGE = "Topics will be loaded shortly..."

STYLE = {
    "font_family": "DejaVu Sans",
    "title_size": 18,
    "subtitle_size": 13,
    "label_size": 9.5,
    "tick_size": 8.5,
    "small_size": 7.5,
    "bg_color": "#FAFAFA",
    "panel_bg": "#FFFFFF",
    "text_primary": "#1A1A2E",
    "text_secondary": "#555555",
    "text_muted": "#999999",
    "grid_color": "#E0E0E0",
    "row_shade_even": "#F8FAFC",
    "row_shade_odd": "#FFFFFF",
    "empty_cell_color": "#E2E8F0",
    "segment_text_color": "#FFFFFF",
    "bar_height": 0.62,
    "segment_inset": 0.04,       # ~4px of a 100px month column
    "segment_rounding": 0.12,
    "dpi": 180,
    "month_width": 1.4,
    "row_height": 0.7,
}


# ── Style Helpers ────────────────────────────────────────────────────────────

def apply_style():
    """Configure matplotlib rcParams for consistent styling."""
    plt.rcParams.update({
        "font.family": STYLE["font_family"],
        "font.size": STYLE["label_size"],
        "axes.facecolor": STYLE["panel_bg"],
        "figure.facecolor": STYLE["bg_color"],
        "axes.edgecolor": STYLE["grid_color"],
        "axes.linewidth": 0.8,
        "axes.grid": False,
        "xtick.color": STYLE["text_secondary"],
        "ytick.color": STYLE["text_secondary"],
        "text.color": STYLE["text_primary"],
    })


def style_axes(ax, title=""):
    """Apply consistent axis styling to the grid axis."""
    if title:
        ax.set_title(title, fontsize=STYLE["subtitle_size"], fontweight="bold",
                     color=STYLE["text_primary"], pad=34, loc="left")
    for side in ("top", "right", "bottom"):
        ax.spines[side].set_visible(False)
    ax.spines["left"].set_linewidth(0.6)
    ax.tick_params(axis="both", length=0)
    ax.set_axisbelow(True)


def add_header_footer(fig, title, subtitle=""):
    """Add a title block and generation timestamp footer."""
    fig.suptitle(title, fontsize=STYLE["title_size"], fontweight="bold",
                 color=STYLE["text_primary"], y=0.99, x=0.04, ha="left")
    if subtitle:
        fig.text(0.04, 0.935, subtitle, fontsize=STYLE["small_size"] + 1,
                 color=STYLE["text_muted"], ha="left")
    fig.text(0.98, 0.008, f"Generated {datetime.now().strftime('%d %b %Y %H:%M')}",
             ha="right", fontsize=STYLE["small_size"], color=STYLE["text_muted"])
    fig.text(0.04, 0.008, "Skill Gantt", ha="left",
             fontsize=STYLE["small_size"], color=STYLE["text_muted"])


def draw_rounded_bar(ax, x, y, width, height, color, alpha=1.0,
                     edgecolor=None, linewidth=0, zorder=3):
    """Draw a horizontal bar with rounded corners using FancyBboxPatch."""
    if width <= 0:
        return None
    rounding = min(STYLE["segment_rounding"], height * 0.3, width * 0.3)
    fancy = FancyBboxPatch(
        (x, y - height / 2), width, height,
        boxstyle=f"round,pad=0,rounding_size={rounding}",
        facecolor=color, alpha=alpha,
        edgecolor=edgecolor or color, linewidth=linewidth, zorder=zorder,
    )
    ax.add_patch(fancy)
    return fancy


def draw_segment(ax, col, y, color, rounding, height=None):
    """Draw one month cell of a task bar.

    Start/end cells are inset and rounded on their outer side only, interior
    cells are plain rectangles, so consecutive cells read as one bar.
    """
    height = height or STYLE["bar_height"]
    inset = STYLE["segment_inset"]
    left = col - 0.5 + (inset if rounding in ("full", "left") else 0)
    right = col + 0.5 - (inset if rounding in ("full", "right") else 0)
    bottom = y - height / 2

    if rounding == "none":
        patch = mpatches.Rectangle((left, bottom), right - left, height,
                                   facecolor=color, edgecolor="none", zorder=3)
        ax.add_patch(patch)
        return patch

    patch = draw_rounded_bar(ax, left, y, right - left, height, color, edgecolor="none")
    # Square off the inner side so the bar joins its neighbour
    if rounding == "left":
        ax.add_patch(mpatches.Rectangle((col, bottom), right - col, height,
                                        facecolor=color, edgecolor="none", zorder=3))
    elif rounding == "right":
        ax.add_patch(mpatches.Rectangle((left, bottom), col - left, height,
                                        facecolor=color, edgecolor="none", zorder=3))
    return patch


_HSL_RE = re.compile(r"^hsl\(\s*([\d.]+)\s*,\s*([\d.]+)%\s*,\s*([\d.]+)%\s*\)$")


def color_to_rgb(color):
    """Convert '#RRGGBB' or 'hsl(h, s%, l%)' to an (r, g, b) tuple in 0..1."""
    match = _HSL_RE.match(color.strip())
    if match:
        hue, sat, light = (float(g) for g in match.groups())
        return colorsys.hls_to_rgb(hue / 360.0, light / 100.0, sat / 100.0)
    return mcolors.to_rgb(color)


# ── Value Helpers ────────────────────────────────────────────────────────────

def clean_str(val):
    """Return stripped string or empty string for NaN/None."""
    if val is None or (isinstance(val, float) and math.isnan(val)):
        return ""
    if val is pd.NaT:
        return ""
    return str(val).strip()


def to_month(val):
    """Coerce a month number to int. Returns None when missing or invalid."""
    if val is None or isinstance(val, bool):
        return None
    if isinstance(val, numbers.Integral):
        return int(val)
    if isinstance(val, numbers.Real):
        if math.isnan(val) or not float(val).is_integer():
            return None
        return int(val)
    if isinstance(val, str):
        try:
            return int(val.strip())
        except ValueError:
            return None
    return None


def task_range(task):
    """(start, end) month numbers of a task, None where missing/invalid."""
    return to_month(task.get("start")), to_month(task.get("end"))


def _fmt_px(value):
    value = float(value)
    if value.is_integer():
        return f"{int(value)}px"
    return f"{value!r}px"


# ── Timeline Normalizer ──────────────────────────────────────────────────────

def default_labels(total_months):
    return [f"Month {i + 1}" for i in range(max(total_months, 0))]


def normalize_plan(data, total_months=DEFAULT_TOTAL_MONTHS):
    """Degrade any plan payload into {"tasks": [...], "labels": [...]}.

    Non-dict data yields no tasks and no labels. Missing or non-list fields
    become empty lists, and empty labels are replaced by "Month 1".."Month N".
    """
    if not isinstance(data, dict):
        return {"tasks": [], "labels": []}

    tasks = data.get("tasks")
    tasks = [t for t in tasks if isinstance(t, dict)] if isinstance(tasks, list) else []
    labels = data.get("labels")
    labels = list(labels) if isinstance(labels, list) else []

    if not labels:
        labels = default_labels(total_months)
    return {"tasks": tasks, "labels": labels}


def extract_plan(details):
    """Unwrap the plan from a role-details payload ({"plan": {...}})."""
    if isinstance(details, dict) and isinstance(details.get("plan"), dict):
        return details["plan"]
    return details


def plan_total_months(data, default=DEFAULT_TOTAL_MONTHS):
    """Month count declared by the plan, falling back to the default."""
    if isinstance(data, dict):
        return to_month(data.get("totalMonths")) or default
    return default


def label_for_month(labels, index):
    """Label at a 0-based index, or the 'Month N' fallback when out of range."""
    if 0 <= index < len(labels):
        return labels[index]
    return f"Month {index + 1}"


# ── Month-Range Projector ────────────────────────────────────────────────────

def row_type_label(task_type):
    return ROW_TYPE_LABELS.get(task_type, DEFAULT_ROW_TYPE)


def project_task(task, total_months):
    """Project a task onto total_months cells (1-indexed months)."""
    start, end = task_range(task)
    ranged = start is not None and end is not None
    cells = []
    for i in range(max(total_months, 0)):
        month = i + 1
        in_range = ranged and start <= month <= end
        cells.append({
            "month": month,
            "has_task": in_range,
            "task": task if in_range else None,
            "is_start": month == start,
            "is_end": month == end,
        })
    return cells


def build_skill_plan(tasks, total_months):
    """One render row per task, in input order."""
    plan = []
    for index, task in enumerate(tasks):
        plan.append({
            "id": task.get("id") or index,
            "skill": task.get("name") or UNNAMED_TASK,
            "type": row_type_label(task.get("type")),
            "task": task,
            "months": project_task(task, total_months),
        })
    return plan


def segment_style(cell):
    """Label and rounding hints for a cell that carries a task."""
    return dict(SEGMENT_STYLES[(bool(cell["is_start"]), bool(cell["is_end"]))])


def task_color(task_type, index):
    """Row colour: type palette by index % 5, otherwise golden-angle hue."""
    if task_type == "non-technical":
        return NON_TECHNICAL_COLORS[index % len(NON_TECHNICAL_COLORS)]
    if task_type == "technical":
        return TECHNICAL_COLORS[index % len(TECHNICAL_COLORS)]
    hue = (index * GOLDEN_ANGLE) % 360
    return f"hsl({hue:g}, 70%, 50%)"


def color_type_for_row(row):
    """Map a row's display type back to the palette key ('Non-Technical' -> 'non-technical')."""
    return row["type"].lower().replace(" ", "-", 1)


def month_info(label, index):
    """Calendar name for a 0-based month column. Names wrap after December."""
    number = index + 1
    return {
        "number": number,
        "name": MONTH_NAMES[(number - 1) % 12],
        "full_label": label,
    }


# ── Summary Aggregator ───────────────────────────────────────────────────────

def task_duration(task):
    """Inclusive month span, floored at 1 (missing start/end count as 0)."""
    start, end = task_range(task)
    return max(1, (end or 0) - (start or 0) + 1)


def plan_stats(tasks):
    """Numeric roll-up of the task list."""
    technical = sum(1 for t in tasks if t.get("type") == "technical")
    non_technical = sum(1 for t in tasks if t.get("type") == "non-technical")
    durations = [task_duration(t) for t in tasks]

    longest = None
    for task, duration in zip(tasks, durations):
        # strict '>' keeps the first task on ties
        if longest is None or duration > longest["duration"]:
            longest = {"name": task.get("name"), "duration": duration}

    mean = sum(durations) / len(durations) if durations else 0.0
    return {
        "total": len(tasks),
        "technical": technical,
        "non_technical": non_technical,
        "project": max(0, len(tasks) - technical - non_technical),
        "total_duration": sum(durations),
        "avg_duration": round(mean, 1),
        "mean_duration": mean,
        "longest": longest,
    }


def summarize_plan(tasks, labels, total_months):
    """The four summary cards, or [] when there are no tasks."""
    if not tasks:
        return []
    stats = plan_stats(tasks)
    longest = stats["longest"]
    first_label = labels[0] if labels and labels[0] else "Start"
    last_label = labels[-1] if labels and labels[-1] else "Finish"

    return [
        {
            "label": "Total Items",
            "value": stats["total"],
            "hint": f"{stats['technical']} technical • {stats['non_technical']} non-technical",
        },
        {
            "label": "Avg Duration",
            "value": f"{stats['mean_duration']:.1f} mo",
            "hint": "per milestone",
        },
        {
            "label": "Longest Sprint",
            "value": f"{longest['duration']} mo" if longest else "–",
            "hint": (longest and longest["name"]) or "N/A",
        },
        {
            "label": "Timeline",
            "value": f"{total_months} mo",
            "hint": f"{first_label} → {last_label}",
        },
    ]


# ── Tooltip Positioner ───────────────────────────────────────────────────────

def position_tooltip(cursor, viewport, tooltip_width=TOOLTIP_WIDTH,
                     estimated_height=TOOLTIP_ESTIMATED_HEIGHT,
                     gap=TOOLTIP_GAP, margin=TOOLTIP_MARGIN):
    """Place the tooltip next to the cursor without leaving the viewport.

    The anchor starts at the cursor with the box centred above it. Near the
    left/right edge the anchor is pushed inward and the horizontal transform
    offsets the box by the same shift; near the top the box flips below the
    cursor, and if it would then overflow the bottom the anchor is clamped.

    cursor is (x, y), viewport is (width, height). Returns the anchor plus
    the CSS translate() terms.
    """
    x, y = cursor
    viewport_width, viewport_height = viewport

    transform_x = "-50%"
    transform_y = f"calc(-100% - {_fmt_px(gap)})"
    horizontal = "center"
    vertical = "above"

    half_width = tooltip_width / 2
    if x - half_width < margin:
        shift = margin - (x - half_width)
        x = x + shift
        transform_x = f"calc(-100% + {_fmt_px(shift)})"
        horizontal = "left"
    elif x + half_width > viewport_width - margin:
        shift = (x + half_width) - (viewport_width - margin)
        x = x - shift
        transform_x = f"calc(-100% - {_fmt_px(shift)})"
        horizontal = "right"

    if y - estimated_height - gap < margin:
        transform_y = _fmt_px(gap)
        vertical = "below"
        if y + estimated_height + gap > viewport_height - margin:
            y = viewport_height - estimated_height - gap - margin

    return {
        "x": x,
        "y": y,
        "transform_x": transform_x,
        "transform_y": transform_y,
        "transform": f"translate({transform_x}, {transform_y})",
        "horizontal": horizontal,
        "vertical": vertical,
    }


# ── Topic Cache ──────────────────────────────────────────────────────────────

def topic_cache_key(skill_name, start_month, end_month):
    return f"{skill_name}_{start_month}_{end_month}"


def normalize_topics(raw):
    """Coerce an API topics payload to {month: [topic, ...]} with int keys."""
    if not isinstance(raw, dict):
        return {}
    topics = {}
    for key, value in raw.items():
        month = to_month(key)
        if month is None:
            continue
        if isinstance(value, (list, tuple)):
            topics[month] = [str(t) for t in value if t is not None]
        elif isinstance(value, str) and value:
            topics[month] = [value]
    return topics


class TopicCache:
    """Per-view cache of month topics keyed by skill and month range.

    A key is ABSENT, FETCHING (in self.loading) or CACHED (in self.cache).
    A failed fetch returns the key to ABSENT so a later hover retries it.
    """

    def __init__(self, role_name, total_months, fetcher=None):
        self.role_name = role_name
        self.total_months = total_months
        self.fetcher = fetcher
        self.cache = {}
        self.loading = set()
        self.closed = False

    def is_loading(self, key):
        return key in self.loading

    def state(self, key):
        if key in self.cache:
            return "cached"
        if key in self.loading:
            return "fetching"
        return "absent"

    async def fetch_topics(self, skill_name, start_month, end_month):
        """Cached topics for the range, fetching them on first use.

        Returns None while another fetch for the same key is in flight, when
        the fetch fails, or when there is no role/skill/month range to ask about.
        """
        if not self.role_name or not skill_name or self.fetcher is None:
            return None
        if not (start_month and end_month):
            return None

        key = topic_cache_key(skill_name, start_month, end_month)
        if key in self.cache:
            return self.cache[key]
        if key in self.loading:
            return None

        self.loading.add(key)
        try:
            raw = await self.fetcher(self.role_name, skill_name, self.total_months,
                                     start_month, end_month)
            topics = normalize_topics(raw or {})
            if not self.closed:
                self.cache[key] = topics
            return topics
        except Exception as e:
            print(f"  WARNING: Could not fetch topics for '{skill_name}' "
                  f"(months {start_month}-{end_month}): {e}")
            return None
        finally:
            self.loading.discard(key)

    async def prefetch(self, tasks):
        """Fetch every task range not yet cached or in flight; wait for all to settle."""
        if not self.role_name or not tasks:
            return []
        pending = []
        for task in tasks:
            start, end = task_range(task)
            if not (start and end):
                continue
            key = topic_cache_key(task.get("name"), start, end)
            if key in self.cache or key in self.loading:
                continue
            pending.append(self.fetch_topics(task.get("name"), start, end))
        if not pending:
            return []
        return await asyncio.gather(*pending, return_exceptions=True)

    def close(self):
        """Stop accepting completions; in-flight requests still run to the end."""
        self.closed = True


# ── Blueprint API Client ─────────────────────────────────────────────────────

def encode_segment(value):
    """URL-encode a path segment the way encodeURIComponent does."""
    return quote(str(value), safe="-_.!~*'()")


class BlueprintClient:
    """aiohttp client for the blueprint endpoints. Use as an async context manager."""

    def __init__(self, base_url=DEFAULT_API_BASE, timeout=DEFAULT_TIMEOUT_SECONDS,
                 session=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def _get_session(self):
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self):
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def role_url(self, role_name):
        return f"{self.base_url}/api/blueprint/role/{encode_segment(role_name)}"

    async def _get_json(self, url, params=None):
        session = self._get_session()
        async with session.get(url, params=params) as resp:
            resp.raise_for_status()
            return await resp.json(content_type=None)

    async def get_topics(self, role_name, skill_name, total_months, start_month, end_month):
        """GET .../skill/{skill}/topics -> {month: [topic, ...]}."""
        url = f"{self.role_url(role_name)}/skill/{encode_segment(skill_name)}/topics"
        params = {
            "totalMonths": str(total_months),
            "startMonth": str(start_month),
            "endMonth": str(end_month),
        }
        return await self._get_json(url, params)

    async def get_role_plan(self, role_name, user_id=None, duration=None):
        """Role details including the plan.

        With a user id the personalised /gantt endpoint is tried first and the
        basic role endpoint is used as a fallback.
        """
        url = self.role_url(role_name)
        if user_id:
            params = {"userId": str(user_id)}
            if duration:
                params["duration"] = str(duration)
            try:
                return await self._get_json(f"{url}/gantt", params)
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                print(f"  WARNING: Gantt endpoint failed ({e}). Falling back to role details.")
        return await self._get_json(url)


async def fetch_role_plan(role_name, user_id=None, duration=None,
                          api_base=DEFAULT_API_BASE, timeout=DEFAULT_TIMEOUT_SECONDS):
    async with BlueprintClient(api_base, timeout) as client:
        return await client.get_role_plan(role_name, user_id=user_id, duration=duration)


async def load_topics(view, api_base=DEFAULT_API_BASE, timeout=DEFAULT_TIMEOUT_SECONDS):
    """Prefetch topics for every row of the view through the blueprint API.

    The client is closed on return, so the view's previous fetcher is restored.
    """
    previous = view.topics.fetcher
    async with BlueprintClient(api_base, timeout) as client:
        view.topics.fetcher = client.get_topics
        try:
            await view.mount()
        finally:
            view.topics.fetcher = previous
    return view.topics.cache


# ── Timeline View ────────────────────────────────────────────────────────────

class TimelineView:
    """State of one mounted timeline: render rows, topics, hover and cursor."""

    def __init__(self, data, total_months=DEFAULT_TOTAL_MONTHS, role_name=None,
                 fetcher=None, viewport=DEFAULT_VIEWPORT):
        self.data = data
        self.total_months = total_months
        self.role_name = role_name
        self.viewport = viewport

        normalized = normalize_plan(data, total_months)
        self.tasks = normalized["tasks"]
        self.labels = normalized["labels"]
        self.rows = build_skill_plan(self.tasks, total_months)
        self.topics = TopicCache(role_name, total_months, fetcher)

        self.hovered = None
        self.cursor = (0, 0)

    def empty_state(self):
        """Message to show instead of the grid, or None when there is a grid."""
        if not self.data or not self.tasks:
            return NO_DATA_MESSAGE
        if not self.labels:
            return NO_TIMELINE_MESSAGE
        return None

    def summary(self):
        return summarize_plan(self.tasks, self.labels, self.total_months)

    def label(self, index):
        return label_for_month(self.labels, index)

    def month_headers(self):
        return [month_info(self.label(i), i) for i in range(max(self.total_months, 0))]

    def row_color(self, row_index):
        return task_color(color_type_for_row(self.rows[row_index]), row_index)

    def row_key(self, row):
        start, end = task_range(row["task"])
        return topic_cache_key(row["skill"], start, end)

    async def mount(self):
        """Prefetch topics for every row."""
        if not self.role_name or not self.tasks:
            return []
        return await self.topics.prefetch(self.tasks)

    async def mouse_enter(self, row_index, month, cursor):
        """Hover a cell. Cells without a task, or outside the grid, are ignored."""
        if not (0 <= row_index < len(self.rows)) or not (1 <= month <= self.total_months):
            return None
        row = self.rows[row_index]
        cell = row["months"][month - 1]
        if not cell["has_task"] or cell["task"] is None:
            return None

        self.cursor = cursor
        self.hovered = {"row_index": row_index, "month": month, "task": cell["task"]}

        start, end = task_range(cell["task"])
        key = topic_cache_key(row["skill"], start, end)
        topics = self.topics.cache.get(key)
        if topics is None:
            topics = await self.topics.fetch_topics(row["skill"], start, end)
        # Pick up rows whose earlier fetch failed
        await self.topics.prefetch(self.tasks)
        return topics

    def mouse_move(self, cursor):
        if self.hovered:
            self.cursor = cursor

    def mouse_leave(self):
        self.hovered = None

    def tooltip(self):
        """Tooltip model for the hovered cell, or None when nothing is shown."""
        if not self.hovered:
            return None
        row_index = self.hovered["row_index"]
        month = self.hovered["month"]
        row = self.rows[row_index]
        key = self.row_key(row)

        loading = self.topics.is_loading(key)
        topics = self.topics.cache.get(key)
        if topics is None and not loading:
            return None
        month_topics = (topics or {}).get(month, [])

        if loading:
            message = LOADING_TOPICS_MESSAGE
        elif not month_topics:
            message = NO_TOPICS_MESSAGE
        else:
            message = None

        return {
            "skill": row["skill"],
            "month": month,
            "month_name": month_info(self.label(month - 1), month - 1)["name"],
            "topics": month_topics,
            "loading": loading,
            "message": message,
            "color": self.row_color(row_index),
            "position": position_tooltip(self.cursor, self.viewport),
        }

    def learning_plan(self):
        """Per-row monthly topics, limited to in-range months that have topics."""
        plan = []
        for row_index, row in enumerate(self.rows):
            start, end = task_range(row["task"])
            key = self.row_key(row)
            topics = self.topics.cache.get(key)
            loading = self.topics.is_loading(key)

            months = []
            for i in range(max(self.total_months, 0)):
                month = i + 1
                month_topics = (topics or {}).get(month, [])
                if not row["months"][i]["has_task"] or not month_topics:
                    continue
                info = month_info(self.label(i), i)
                months.append({
                    "month": month,
                    "name": info["name"],
                    "label": info["full_label"],
                    "topics": month_topics,
                })

            if loading:
                message = LOADING_TOPICS_MESSAGE
            elif not months:
                message = TOPICS_PENDING_MESSAGE
            else:
                message = None

            plan.append({
                "skill": row["skill"],
                "type": row["type"],
                "color": self.row_color(row_index),
                "start": start,
                "end": end,
                "loading": loading,
                "message": message,
                "months": months,
            })
        return plan

    def close(self):
        self.hovered = None
        self.topics.close()


# ── Plan Template ────────────────────────────────────────────────────────────

def generate_template(output_path):
    """Create an Excel plan template (Tasks, Labels, Settings) with example rows
    and a Type dropdown."""
    wb = Workbook()

    header_font = Font(bold=True, color="FFFFFF", size=11)
    header_fill = PatternFill(start_color="2E3B4E", end_color="2E3B4E", fill_type="solid")
    header_alignment = Alignment(horizontal="center", vertical="center")
    thin_border = Border(
        left=Side(style="thin"), right=Side(style="thin"),
        top=Side(style="thin"), bottom=Side(style="thin"),
    )

    def style_header(ws, row=1):
        for cell in ws[row]:
            cell.font = header_font
            cell.fill = header_fill
            cell.alignment = header_alignment
            cell.border = thin_border

    # ── Sheet 1: Tasks ──
    ws_tasks = wb.active
    ws_tasks.title = "Tasks"
    ws_tasks.append(["ID", "Name", "Type", "Start", "End"])
    example_tasks = [
        ["sql", "SQL", "technical", 1, 3],
        ["python", "Python", "technical", 2, 5],
        ["communication", "Communication", "non-technical", 2, 2],
        ["portfolio", "Portfolio Project", "project", 4, 6],
    ]
    for row in example_tasks:
        ws_tasks.append(row)
    for col, width in zip("ABCDE", (16, 32, 18, 10, 10)):
        ws_tasks.column_dimensions[col].width = width
    style_header(ws_tasks)
    ws_tasks.freeze_panes = "A2"

    dv_type = DataValidation(type="list", formula1='"technical,non-technical,project"',
                             allow_blank=True)
    dv_type.error = "Please select technical, non-technical, or project"
    dv_type.errorTitle = "Invalid Type"
    ws_tasks.add_data_validation(dv_type)
    dv_type.add("C2:C200")

    dv_month = DataValidation(type="whole", operator="between",
                              formula1=str(1), formula2=str(MAX_DURATION_MONTHS))
    dv_month.error = f"Month must be a whole number between 1 and {MAX_DURATION_MONTHS}"
    dv_month.errorTitle = "Invalid Month"
    ws_tasks.add_data_validation(dv_month)
    dv_month.add("D2:E200")

    # ── Sheet 2: Labels (leave empty for Month 1..N) ──
    ws_labels = wb.create_sheet("Labels")
    ws_labels.append(["Label"])
    ws_labels.column_dimensions["A"].width = 24
    style_header(ws_labels)

    # ── Sheet 3: Settings ──
    ws_settings = wb.create_sheet("Settings")
    ws_settings.append(["Total Months"])
    ws_settings.append([DEFAULT_TOTAL_MONTHS])
    ws_settings.column_dimensions["A"].width = 16
    style_header(ws_settings)

    os.makedirs(os.path.dirname(os.path.abspath(output_path)), exist_ok=True)
    wb.save(output_path)
    print(f"Template saved: {output_path}")
    return output_path


# ── Plan Loading ─────────────────────────────────────────────────────────────

def load_plan(filepath):
    """Load a plan from .json or .xlsx. Unreadable input degrades to {}."""
    ext = os.path.splitext(filepath)[1].lower()
    if ext == ".json":
        try:
            with open(filepath, encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            print(f"  WARNING: Could not read plan JSON: {e}")
            return {}
        return extract_plan(raw)
    if ext in (".xlsx", ".xlsm"):
        return load_plan_excel(filepath)
    print(f"  ERROR: Unsupported plan file type '{ext}'. Use .json or .xlsx.")
    return {}


def load_plan_excel(filepath):
    """Read the Tasks sheet plus optional Labels and Settings sheets."""
    try:
        df = pd.read_excel(filepath, sheet_name="Tasks")
    except Exception as e:
        print(f"  WARNING: Could not read Tasks sheet: {e}")
        return {}
    df.columns = [str(c).strip() for c in df.columns]
    required = {"Name", "Start", "End"}
    missing = required - set(df.columns)
    if missing:
        print(f"  ERROR: Tasks sheet is missing column(s): {', '.join(sorted(missing))}. "
              f"Found: {', '.join(df.columns)}")
        return {}

    tasks = []
    for _, row in df.iterrows():
        name = clean_str(row["Name"])
        if not name or name == "nan":
            continue  # skip blank rows
        task = {
            "name": name,
            "type": clean_str(row.get("Type", "")).lower(),
            "start": to_month(row["Start"]),
            "end": to_month(row["End"]),
        }
        task_id = clean_str(row.get("ID", ""))
        if task_id:
            task["id"] = task_id
        tasks.append(task)

    plan = {"tasks": tasks, "labels": _load_labels(filepath)}
    total_months = _load_total_months(filepath)
    if total_months:
        plan["totalMonths"] = total_months
    return plan


def _load_labels(filepath):
    try:
        df = pd.read_excel(filepath, sheet_name="Labels")
    except ValueError:
        return []  # sheet is optional
    df.columns = [str(c).strip() for c in df.columns]
    if df.empty or "Label" not in df.columns:
        return []
    return [clean_str(v) for v in df["Label"] if clean_str(v)]


def _load_total_months(filepath):
    try:
        df = pd.read_excel(filepath, sheet_name="Settings")
    except ValueError:
        return None
    df.columns = [str(c).strip() for c in df.columns]
    if df.empty or "Total Months" not in df.columns:
        return None
    return to_month(df["Total Months"].iloc[0])


# ── Plan Validation ──────────────────────────────────────────────────────────

def validate_plan(tasks, labels, total_months):
    """Check a normalised plan. Returns (errors, warnings); nothing is repaired."""
    errors = []
    warnings = []

    if not isinstance(total_months, int) or total_months <= 0:
        errors.append(f"Timeline needs a positive month count (got {total_months!r}).")
        return errors, warnings

    if labels and len(labels) != total_months:
        warnings.append(f"{len(labels)} label(s) provided for a {total_months}-month timeline. "
                        f"Missing months use 'Month N' labels.")

    for index, task in enumerate(tasks, start=1):
        name = task.get("name") or ""
        ref = f"Task {index} ('{name}')" if name else f"Task {index}"
        if not name:
            warnings.append(f"{ref}: has no name; shown as '{UNNAMED_TASK}'.")

        task_type = task.get("type")
        if task_type not in TASK_TYPES:
            warnings.append(f"{ref}: type {task_type!r} not recognised. "
                            f"Valid: {', '.join(TASK_TYPES)}")

        start, end = task_range(task)
        if start is None or end is None:
            warnings.append(f"{ref}: missing or invalid start/end month; no months highlighted.")
            continue
        if start > end:
            warnings.append(f"{ref}: start month {start} is after end month {end}.")
        if start < 1 or end > total_months:
            warnings.append(f"{ref}: months {start}-{end} fall outside 1-{total_months}.")

    return errors, warnings


# ── Chart: Skill Gantt ───────────────────────────────────────────────────────

def render_skill_gantt(view, output_path):
    """Render the skill grid as a PNG. Returns the path, or None for empty states."""
    message = view.empty_state()
    if message:
        print(f"  {message}. Nothing to render.")
        return None

    apply_style()
    rows = view.rows
    n_rows = len(rows)
    n_months = view.total_months
    headers = view.month_headers()

    fig_width = max(10, 3.5 + n_months * STYLE["month_width"])
    fig_height = max(3.5, n_rows * STYLE["row_height"] + 2.5)
    fig, ax = plt.subplots(figsize=(fig_width, fig_height), facecolor=STYLE["bg_color"])

    x = np.arange(n_months)

    # ── Row shading and month separators ──
    for i in range(n_rows):
        shade = STYLE["row_shade_even"] if i % 2 == 0 else STYLE["row_shade_odd"]
        ax.axhspan(i - 0.5, i + 0.5, color=shade, zorder=0)
    for col in x[1:]:
        ax.axvline(col - 0.5, color=STYLE["grid_color"], linewidth=0.6, zorder=1)

    # ── Bars ──
    y_labels = []
    y_colors = []
    for row_index, row in enumerate(rows):
        y = n_rows - 1 - row_index
        color = color_to_rgb(view.row_color(row_index))
        y_labels.append(f"{row['skill']}\n{row['type'].upper()}")
        y_colors.append(color)

        for cell in row["months"]:
            col = cell["month"] - 1
            if not cell["has_task"]:
                ax.plot(col, y, marker="o", markersize=2.5,
                        color=STYLE["empty_cell_color"], zorder=2)
                continue
            hint = segment_style(cell)
            draw_segment(ax, col, y, color, hint["rounding"])
            if hint["label"]:
                ax.text(col, y, hint["label"], ha="center", va="center",
                        fontsize=STYLE["small_size"], fontweight="bold",
                        color=STYLE["segment_text_color"], zorder=5)

    # ── Axes ──
    ax.set_xlim(-0.5, n_months - 0.5)
    ax.set_ylim(-0.5, n_rows - 0.5)
    ax.xaxis.tick_top()
    ax.set_xticks(x)
    ax.set_xticklabels([f"{h['name']}\nM{h['number']}" for h in headers],
                       fontsize=STYLE["tick_size"], fontweight="bold")
    ax.set_yticks(range(n_rows))
    ax.set_yticklabels(list(reversed(y_labels)), fontsize=STYLE["label_size"])
    for tick_label, color in zip(ax.get_yticklabels(), reversed(y_colors)):
        tick_label.set_color(color)
        tick_label.set_fontweight("bold")
    style_axes(ax, title="Skill Development Plan")

    stats = plan_stats(view.tasks)
    subtitle = (f"{stats['total']} items · {stats['technical']} technical · "
                f"{stats['non_technical']} non-technical · {n_months} months "
                f"({view.label(0)} → {view.label(n_months - 1)})")
    title = f"{view.role_name} — Skill Atlas" if view.role_name else "Skill Atlas"
    add_header_footer(fig, title, subtitle)

    os.makedirs(os.path.dirname(os.path.abspath(output_path)), exist_ok=True)
    fig.savefig(output_path, dpi=STYLE["dpi"], bbox_inches="tight", facecolor=STYLE["bg_color"])
    plt.close(fig)
    print(f"  Gantt chart saved: {output_path}")
    return output_path


# ── Learning Plan Export ─────────────────────────────────────────────────────

def export_learning_plan(view, output_path):
    """Write one row per (skill, month, topic) to an Excel workbook."""
    wb = Workbook()
    ws = wb.active
    ws.title = "Learning Plan"
    ws.append(["Skill", "Type", "Month", "Month Name", "Label", "Topic"])

    header_font = Font(bold=True, color="FFFFFF", size=11)
    header_fill = PatternFill(start_color="2E3B4E", end_color="2E3B4E", fill_type="solid")
    for cell in ws[1]:
        cell.font = header_font
        cell.fill = header_fill
        cell.alignment = Alignment(horizontal="center", vertical="center")

    for entry in view.learning_plan():
        hex_color = mcolors.to_hex(color_to_rgb(entry["color"])).lstrip("#").upper()
        for month in entry["months"]:
            for topic in month["topics"]:
                ws.append([entry["skill"], entry["type"], month["month"],
                           month["name"], str(month["label"]), topic])
                ws.cell(row=ws.max_row, column=1).fill = PatternFill(
                    start_color=hex_color, end_color=hex_color, fill_type="solid")
                ws.cell(row=ws.max_row, column=1).font = Font(bold=True, color="FFFFFF")

    for col, width in zip("ABCDEF", (28, 16, 8, 12, 16, 60)):
        ws.column_dimensions[col].width = width
    ws.freeze_panes = "A2"

    os.makedirs(os.path.dirname(os.path.abspath(output_path)), exist_ok=True)
    wb.save(output_path)
    print(f"  Learning plan saved: {output_path}")
    return output_path


# ── Console Output ───────────────────────────────────────────────────────────

def print_summary(view):
    """Print the summary cards to the console."""
    cards = view.summary()
    print()
    print("=" * 60)
    print("  PLAN SUMMARY")
    print("=" * 60)
    if not cards:
        print(f"  {view.empty_state() or NO_DATA_MESSAGE}")
    for card in cards:
        print(f"  {card['label'] + ':':<16}{card['value']}  ({card['hint']})")
    stats = plan_stats(view.tasks)
    if stats["project"]:
        print(f"  {'Other:':<16}{stats['project']} item{'s' if stats['project'] != 1 else ''}")
    print("=" * 60)
    print()


def print_learning_plan(view):
    """Print the monthly learning plan, one block per skill."""
    print("  MONTHLY LEARNING PLAN")
    for entry in view.learning_plan():
        print()
        print(f"  {entry['skill']} [{entry['type']}]  Months {entry['start']} - {entry['end']}")
        if entry["message"]:
            print(f"    {entry['message']}")
            continue
        for month in entry["months"]:
            print(f"    {month['name']} (M{month['month']}):")
            for topic in month["topics"]:
                print(f"      • {topic}")
    print()


# ── Main ─────────────────────────────────────────────────────────────────────

def build_parser():
    parser = argparse.ArgumentParser(
        description="Skill Gantt — render role-readiness skill plans and monthly learning topics"
    )
    parser.add_argument(
        "--template", action="store_true",
        help="Generate an Excel plan template with example data"
    )
    parser.add_argument(
        "--input", default=None,
        help="Plan file (.json or .xlsx). If omitted, the plan is fetched for --role"
    )
    parser.add_argument(
        "--outdir", default=None,
        help="Output directory (default: output/)"
    )
    parser.add_argument(
        "--months", type=int, default=None,
        help="Timeline length in months (default: plan totalMonths, else 6)"
    )
    parser.add_argument("--role", default=None, help="Role name used to fetch the plan and topics")
    parser.add_argument("--user-id", default=None, help="User id for the personalised plan endpoint")
    parser.add_argument(
        "--duration", type=int, default=None,
        help=f"Custom preparation duration in months ({MIN_DURATION_MONTHS}-{MAX_DURATION_MONTHS})"
    )
    parser.add_argument("--api-base", default=DEFAULT_API_BASE,
                        help=f"Blueprint API base URL (default: {DEFAULT_API_BASE})")
    parser.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT_SECONDS,
                        help="HTTP timeout in seconds")
    parser.add_argument("--no-topics", action="store_true",
                        help="Skip fetching monthly topics")
    parser.add_argument(
        "--outputs", default=["all"], nargs="+",
        choices=["all", "gantt", "summary", "plan", "xlsx"],
        help="Which outputs to produce (default: all)"
    )
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    if args.template:
        generate_template(args.input or DEFAULT_TEMPLATE)
        return

    if args.duration is not None and not (MIN_DURATION_MONTHS <= args.duration <= MAX_DURATION_MONTHS):
        print(f"  ERROR: --duration must be between {MIN_DURATION_MONTHS} and "
              f"{MAX_DURATION_MONTHS} months (got {args.duration}).")
        sys.exit(1)

    # Load
    if args.input:
        if not os.path.exists(args.input):
            print(f"Error: Input file not found: {args.input}")
            print("Run with --template first to create a template.")
            sys.exit(1)
        print(f"Loading plan from: {args.input}")
        data = load_plan(args.input)
    elif args.role:
        print(f"Fetching plan for role: {args.role}")
        try:
            details = asyncio.run(fetch_role_plan(args.role, args.user_id, args.duration,
                                                  args.api_base, args.timeout))
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            # ValueError covers a 200 response whose body is not JSON
            print(f"  ERROR: Could not fetch plan for role '{args.role}': {e}")
            sys.exit(1)
        data = extract_plan(details)
    else:
        print("Error: Provide --input or --role (or --template to create an input file).")
        sys.exit(1)

    total_months = args.months if args.months is not None else plan_total_months(data)
    view = TimelineView(data, total_months=total_months, role_name=args.role)
    print(f"  Tasks: {len(view.tasks)}")
    print(f"  Timeline: {total_months} months")

    # Validate
    errors, warnings = validate_plan(view.tasks, view.labels, total_months)
    for w in warnings:
        print(f"  WARNING: {w}")
    if errors:
        for e in errors:
            print(f"  ERROR: {e}")
        sys.exit(1)

    message = view.empty_state()
    if message:
        print(f"  {message}")
        return

    # Topics
    if args.role and not args.no_topics:
        asyncio.run(load_topics(view, args.api_base, args.timeout))
        print(f"  Topics loaded: {len(view.topics.cache)} of {len(view.rows)} skills")

    out_dir = args.outdir or DEFAULT_OUTDIR
    outputs = args.outputs
    gen_all = "all" in outputs
    output_files = []

    if gen_all or "summary" in outputs:
        print_summary(view)
    if gen_all or "plan" in outputs:
        print_learning_plan(view)
    if gen_all or "gantt" in outputs:
        path = render_skill_gantt(view, os.path.join(out_dir, "skill_gantt.png"))
        if path:
            output_files.append(path)
    if gen_all or "xlsx" in outputs:
        output_files.append(export_learning_plan(view, os.path.join(out_dir, "learning_plan.xlsx")))

    view.close()

    if output_files:
        print()
        print("  Output:")
        for f in output_files:
            print(f"    {os.path.abspath(f)}")
    print("\nDone.")


if __name__ == "__main__":
    main()
