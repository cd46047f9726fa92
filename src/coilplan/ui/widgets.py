from __future__ import annotations

from contextlib import contextmanager

from nicegui import ui

from coilplan.core.models import Plan

_THEME_APPLIED = False

NAV_SECTIONS: list[tuple[str, str, str]] = [
    ("coils", "Coils", "/"),
    ("demand", "Demand", "/demand"),
    ("planner", "Planner", "/planner"),
    ("history", "History", "/history"),
    ("settings", "Settings", "/settings"),
]


def apply_theme() -> None:
    """Global colours and the few CSS classes the pages rely on."""
    ui.colors(
        primary="#0f766e",  # teal-700
        secondary="#475569",  # slate-600
        positive="#16a34a",
        negative="#dc2626",
        warning="#f59e0b",
    )
    ui.add_css(
        """
        body { background: #f8fafc; }
        .cp-container { max-width: 1280px; margin: 0 auto; padding: 16px; }
        .cp-subtitle { color: #475569; }
        .cp-header { border-bottom: 1px solid rgba(15, 23, 42, 0.08); }
        .cp-table .q-table th, .cp-table .q-table td { padding: 4px 8px; }
        .cp-strip { display: inline-block; height: 28px; line-height: 28px; text-align: center;
                    font-size: 11px; color: white; overflow: hidden; border-right: 1px solid white; }
        .cp-strip-scrap { background: #cbd5e1; color: #334155; }
        """
    )


def ensure_theme() -> None:
    global _THEME_APPLIED
    if _THEME_APPLIED:
        return
    apply_theme()
    _THEME_APPLIED = True


@contextmanager
def page_container():
    with ui.element("div").classes("cp-container"):
        yield


def render_nav(active: str | None = None) -> None:
    ensure_theme()
    active_key = active or "coils"
    with ui.header().classes("cp-header bg-white text-slate-900"):
        with ui.row().classes("w-full items-center justify-between gap-4 px-4 py-2"):
            ui.label("Coil slitting planner").classes("text-xl md:text-2xl font-semibold leading-none")
            with ui.row().classes("items-center gap-1"):
                for key, label, path in NAV_SECTIONS:
                    props = "dense no-caps color=primary" + (" unelevated" if key == active_key else " flat")
                    ui.button(label, on_click=lambda p=path: ui.navigate.to(p)).props(props)


_STRIP_COLOURS = ("#0f766e", "#2563eb", "#7c3aed", "#db2777", "#ea580c", "#65a30d")


def render_strip_bar(plan: Plan, coil_width: float) -> None:
    """Draw each segment as a horizontal bar of strips scaled to the coil width."""
    colours: dict[str, str] = {}
    for seg in plan.segments:
        with ui.row().classes("w-full items-center gap-2 no-wrap"):
            ui.label(f"#{seg.ordinal}").classes("text-xs text-slate-500 w-8")
            with ui.element("div").classes("w-full flex no-wrap border rounded overflow-hidden"):
                for strip in seg.strips:
                    for _ in range(strip.count):
                        pct = 100.0 * strip.width / coil_width if coil_width else 0.0
                        el = ui.element("div").classes("cp-strip").style(f"width: {pct:.3f}%")
                        if strip.demand_id is None:
                            el.classes("cp-strip-scrap")
                        else:
                            colour = colours.setdefault(
                                strip.demand_id, _STRIP_COLOURS[len(colours) % len(_STRIP_COLOURS)]
                            )
                            el.style(f"background: {colour}")
                        with el:
                            ui.label(f"{strip.width:g}")
                            ui.tooltip(f"{strip.material_code or 'trim'} {strip.width:g} mm")
            ui.label(f"{seg.processing_weight:g} kg · {seg.efficiency:.2f}%").classes("text-xs w-40")
