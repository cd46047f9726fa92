from __future__ import annotations

import asyncio
import threading
from dataclasses import asdict, fields

from nicegui import ui

from coilplan.core.compat import shortage_pieces
from coilplan.core.ledger import LedgerError
from coilplan.core.models import Coil, Plan, PlanningResult, SolverConfig
from coilplan.data.bulk_import import export_filename
from coilplan.data.repository import SOLVER_CONFIG_PREFIX, Repository
from coilplan.ui.widgets import page_container, render_nav, render_strip_bar


def _coil_label(c: Coil) -> str:
    return (
        f"{c.coil_code} · {c.grade.value} Z{c.coating} {c.surface.value} · "
        f"{c.thickness:g}x{c.width:g} · {c.remaining_weight:g} kg"
    )


def register_pages(repo: Repository) -> None:
    def import_card(*, kind: str, title: str, hint: str) -> None:
        with ui.card().classes("p-4 w-[min(620px,100%)]"):
            ui.label(title).classes("text-lg font-semibold")
            ui.label(hint).classes("text-slate-600 text-sm")
            pasted = ui.textarea(placeholder="Paste rows copied from the spreadsheet").classes("w-full").props(
                "outlined autogrow"
            )

            def import_pasted() -> None:
                try:
                    n = repo.import_text(kind=kind, text=pasted.value or "")
                except Exception as ex:
                    ui.notify(f"Error importing {kind}: {ex}", color="negative")
                    return
                if n == 0:
                    ui.notify("No valid rows found", color="warning")
                    return
                ui.notify(f"Imported {n} row(s)")
                ui.navigate.reload()

            async def handle_upload(e):
                try:
                    content = await e.file.read()
                    filename = getattr(e.file, "name", None) or getattr(e.file, "filename", None) or ""
                    n = repo.import_bytes(kind=kind, content=content, filename=filename)
                    ui.notify(f"Imported {n} row(s) from {filename or 'upload'}")
                    ui.navigate.reload()
                except Exception as ex:
                    ui.notify(f"Error importing {kind}: {ex}", color="negative")

            with ui.row().classes("items-center gap-3"):
                ui.button("Import pasted rows", icon="content_paste", on_click=import_pasted).props(
                    "unelevated color=primary"
                )
                ui.upload(label="Upload .xlsx / .csv", on_upload=handle_upload, auto_upload=True).props(
                    "accept=.xlsx,.csv max-files=1 dense flat"
                )

    def confirm(message: str, on_yes) -> None:
        dialog = ui.dialog().props("persistent")
        with dialog, ui.card():
            ui.label(message)
            with ui.row().classes("w-full justify-end gap-2"):
                ui.button("Cancel", on_click=dialog.close).props("flat")

                def _yes() -> None:
                    dialog.close()
                    on_yes()

                ui.button("Confirm", color="negative", on_click=_yes).props("unelevated")
        dialog.open()

    @ui.page("/")
    def coils_page() -> None:
        render_nav(active="coils")
        with page_container():
            ui.label("Coil stock").classes("text-2xl font-semibold")
            ui.label(
                "Columns: coil code, grade, coating, surface, thickness, width, weight (kg)."
            ).classes("cp-subtitle")

            import_card(kind="coils", title="Add coils", hint="Header rows are skipped automatically.")

            coils = repo.list_coils()
            rows = [
                {
                    "coil_id": c.coil_id,
                    "coil_code": c.coil_code,
                    "grade": c.grade.value,
                    "coating": f"Z{c.coating}",
                    "surface": c.surface.value,
                    "thickness": c.thickness,
                    "width": c.width,
                    "total_weight": c.total_weight,
                    "remaining_weight": c.remaining_weight,
                    "entry_date": c.entry_date,
                    "last_used_at": c.last_used_at or "",
                }
                for c in coils
            ]
            tbl = ui.table(
                columns=[
                    {"name": "coil_code", "label": "Coil", "field": "coil_code", "sortable": True},
                    {"name": "grade", "label": "Grade", "field": "grade", "sortable": True},
                    {"name": "coating", "label": "Coating", "field": "coating"},
                    {"name": "surface", "label": "Surface", "field": "surface"},
                    {"name": "thickness", "label": "Thk (mm)", "field": "thickness", "sortable": True},
                    {"name": "width", "label": "Width (mm)", "field": "width", "sortable": True},
                    {"name": "total_weight", "label": "Total (kg)", "field": "total_weight"},
                    {"name": "remaining_weight", "label": "Left (kg)", "field": "remaining_weight", "sortable": True},
                    {"name": "entry_date", "label": "Entered", "field": "entry_date"},
                    {"name": "last_used_at", "label": "Last used", "field": "last_used_at"},
                ],
                rows=rows,
                row_key="coil_id",
                selection="multiple",
                pagination=25,
            ).classes("w-full cp-table").props("dense flat bordered")

            def delete_selected() -> None:
                selected = list(tbl.selected or [])
                if not selected:
                    ui.notify("Select coils first", color="warning")
                    return
                for r in selected:
                    repo.delete_coil(r["coil_id"])
                ui.notify(f"Deleted {len(selected)} coil(s)")
                ui.navigate.reload()

            def delete_all() -> None:
                repo.delete_all_coils()
                ui.notify("Coil stock cleared")
                ui.navigate.reload()

            with ui.row().classes("w-full justify-end gap-2"):
                ui.button("Delete selected", icon="delete", on_click=delete_selected).props("outline")
                ui.button(
                    "Clear stock",
                    color="negative",
                    on_click=lambda: confirm("Delete every coil in stock?", delete_all),
                ).props("outline")

    @ui.page("/demand")
    def demand_page() -> None:
        render_nav(active="demand")
        with page_container():
            ui.label("Demand").classes("text-2xl font-semibold")
            ui.label(
                "BOM shortage sheet: client, model, material code, sheet metal code, name, grade, "
                "coating/surface, thickness, spec 1, spec 2, quota, weight, pieces, batch."
            ).classes("cp-subtitle")

            import_card(kind="demand", title="Add demand lines", hint="Shortage quantities are booked as negative balances.")

            lines = repo.list_demand_lines()
            rows = [
                {
                    "demand_id": d.demand_id,
                    "client": d.client,
                    "model": d.model,
                    "material_code": d.material_code,
                    "name": d.name,
                    "spec": f"{d.grade.value} Z{d.coating} {d.surface.value} {d.thickness:g}",
                    "widths": " / ".join(
                        f"{w:g}{note or ''}" for w, note in ((d.spec1, d.spec1_note), (d.spec2, d.spec2_note)) if w > 0
                    ),
                    "quota": d.quota,
                    "balance": d.balance,
                    "shortage_pcs": shortage_pieces(d),
                    "allow_overproduction": d.allow_overproduction,
                }
                for d in lines
            ]
            tbl = ui.table(
                columns=[
                    {"name": "client", "label": "Client", "field": "client", "sortable": True},
                    {"name": "model", "label": "Model", "field": "model"},
                    {"name": "material_code", "label": "Material", "field": "material_code", "sortable": True},
                    {"name": "name", "label": "Name", "field": "name"},
                    {"name": "spec", "label": "Spec", "field": "spec"},
                    {"name": "widths", "label": "Widths (mm)", "field": "widths"},
                    {"name": "quota", "label": "Quota (kg)", "field": "quota"},
                    {"name": "balance", "label": "Balance (kg)", "field": "balance", "sortable": True},
                    {"name": "shortage_pcs", "label": "Short (pcs)", "field": "shortage_pcs"},
                    {"name": "allow_overproduction", "label": "Stock build", "field": "allow_overproduction"},
                ],
                rows=rows,
                row_key="demand_id",
                selection="multiple",
                pagination=25,
            ).classes("w-full cp-table").props("dense flat bordered")

            tbl.add_slot(
                "body-cell-balance",
                r"""
<q-td :props="props">
  <span :class="props.value < 0 ? 'text-red-600 font-semibold' : 'text-green-700'">{{ props.value }}</span>
</q-td>
""",
            )
            tbl.add_slot(
                "body-cell-allow_overproduction",
                r"""
<q-td :props="props">
  <q-icon v-if="props.value" name="inventory_2" color="primary" size="18px" />
</q-td>
""",
            )

            def toggle_overproduction(allow: bool) -> None:
                selected = list(tbl.selected or [])
                if not selected:
                    ui.notify("Select demand lines first", color="warning")
                    return
                for r in selected:
                    repo.set_allow_overproduction(r["demand_id"], allow)
                ui.notify(f"Updated {len(selected)} line(s)")
                ui.navigate.reload()

            def delete_selected() -> None:
                selected = list(tbl.selected or [])
                for r in selected:
                    repo.delete_demand_line(r["demand_id"])
                ui.notify(f"Deleted {len(selected)} line(s)")
                ui.navigate.reload()

            def delete_all() -> None:
                repo.delete_all_demand_lines()
                ui.notify("Demand cleared")
                ui.navigate.reload()

            with ui.row().classes("w-full justify-end gap-2"):
                ui.button("Allow stock build", on_click=lambda: toggle_overproduction(True)).props("outline")
                ui.button("Shortage only", on_click=lambda: toggle_overproduction(False)).props("outline")
                ui.button("Delete selected", icon="delete", on_click=delete_selected).props("outline")
                ui.button(
                    "Clear demand",
                    color="negative",
                    on_click=lambda: confirm("Delete every demand line?", delete_all),
                ).props("outline")

    @ui.page("/planner")
    def planner_page() -> None:
        render_nav(active="planner")
        state: dict = {"coil": None, "result": None, "cancel": None}

        with page_container():
            ui.label("Slitting planner").classes("text-2xl font-semibold")
            ui.label(
                "Stock mode fills a chosen coil with whatever demand fits; urgent mode picks a coil for one order."
            ).classes("cp-subtitle")

            coils = repo.list_coils(min_remaining=0.1)
            demand = [d for d in repo.list_demand_lines() if d.balance < 0]

            with ui.card().classes("w-full p-4"):
                with ui.row().classes("items-end gap-4 w-full"):
                    mode = ui.toggle({"stock": "Stock", "urgent": "Urgent order"}, value="stock")
                    coil_sel = ui.select(
                        {c.coil_id: _coil_label(c) for c in coils}, label="Coil", with_input=True
                    ).classes("w-[28rem]")
                    urgent_sel = ui.select(
                        {d.demand_id: f"{d.material_code} · {d.name} · {d.balance:g} kg" for d in demand},
                        label="Urgent demand line",
                        with_input=True,
                    ).classes("w-[28rem]")
                    urgent_sel.bind_visibility_from(mode, "value", value="urgent")

                with ui.row().classes("items-center gap-2 pt-2"):
                    run_btn = ui.button("Generate plans", icon="play_arrow").props("unelevated color=primary")
                    cancel_btn = ui.button("Cancel", icon="stop").props("flat")
                    cancel_btn.set_visibility(False)
                    status = ui.label("").classes("text-slate-600")

            results = ui.column().classes("w-full gap-4")

            def render_results() -> None:
                results.clear()
                result: PlanningResult | None = state["result"]
                coil: Coil | None = state["coil"]
                if result is None or coil is None:
                    return
                with results:
                    if not result.ok:
                        ui.label(result.message).classes("text-amber-700")
                        return
                    ui.label(result.message).classes("text-slate-600")
                    for plan in result.plans:
                        render_plan(plan, coil)

            def render_plan(plan: Plan, coil: Coil) -> None:
                with ui.card().classes("w-full p-4"):
                    with ui.row().classes("w-full items-center justify-between"):
                        with ui.column().classes("gap-0"):
                            ui.label(f"{plan.name} · {plan.efficiency:.2f}%").classes("text-lg font-semibold")
                            ui.label(plan.description).classes("text-sm text-slate-600")
                        with ui.row().classes("items-center gap-4"):
                            ui.label(f"Processing {plan.processing_weight:g} kg").classes("text-sm")
                            ui.label(f"Coil left {plan.remaining_coil_weight:g} kg").classes("text-sm")
                            ui.button(
                                "Execute",
                                icon="done_all",
                                on_click=lambda p=plan: confirm(
                                    f"Execute {p.name} on {coil.coil_code}? Stock and balances will be updated.",
                                    lambda: execute(p),
                                ),
                            ).props("unelevated color=primary")
                    render_strip_bar(plan, coil.width)
                    with ui.expansion("Details", value=False).classes("w-full"):
                        try:
                            details = repo.preview_plan(plan=plan, coil_id=coil.coil_id)
                        except ValueError as ex:
                            ui.label(str(ex)).classes("text-red-600")
                            return
                        ui.table(
                            columns=[
                                {"name": "segment", "label": "Seg", "field": "segment"},
                                {"name": "material_code", "label": "Material", "field": "material_code"},
                                {"name": "name", "label": "Name", "field": "name"},
                                {"name": "width_label", "label": "Width", "field": "width_label"},
                                {"name": "count", "label": "Strips", "field": "count"},
                                {"name": "total_weight", "label": "Output (kg)", "field": "total_weight"},
                                {"name": "expected_pieces", "label": "Pieces", "field": "expected_pieces"},
                                {"name": "balance_before", "label": "Balance before", "field": "balance_before"},
                                {"name": "balance_after", "label": "Balance after", "field": "balance_after"},
                            ],
                            rows=[{**r, "_row_id": i} for i, r in enumerate(details)],
                            row_key="_row_id",
                        ).classes("w-full cp-table").props("dense flat bordered")

            def execute(plan: Plan) -> None:
                coil: Coil | None = state["coil"]
                if coil is None:
                    return
                try:
                    record = repo.execute_plan(plan=plan, coil_id=coil.coil_id)
                except LedgerError as ex:
                    ui.notify(str(ex), color="negative")
                    return
                pieces = sum(i.pieces for i in record.impacts)
                ui.notify(f"{record.plan_name} executed: {record.total_consumed_weight:g} kg, {pieces} piece(s)")
                state["result"] = None
                results.clear()
                ui.navigate.to("/history")

            async def run_planner() -> None:
                cancel = threading.Event()
                state["cancel"] = cancel
                run_btn.disable()
                cancel_btn.set_visibility(True)
                status.text = "Searching cutting patterns..."
                try:
                    if mode.value == "urgent":
                        if not urgent_sel.value:
                            ui.notify("Pick the urgent demand line", color="warning")
                            return
                        coil, reason, result = await asyncio.to_thread(
                            lambda: repo.generate_urgent_plans(demand_id=urgent_sel.value, cancel=cancel)
                        )
                        if coil is not None:
                            coil_sel.value = coil.coil_id
                            ui.notify(f"Selected coil {coil.coil_code}: {reason}")
                    else:
                        if not coil_sel.value:
                            ui.notify("Pick a coil", color="warning")
                            return
                        coil = repo.get_coil(coil_sel.value)
                        result = await asyncio.to_thread(
                            lambda: repo.generate_plans_for(coil_id=coil_sel.value, mode="stock", cancel=cancel)
                        )
                    state["coil"] = coil
                    state["result"] = result
                    status.text = "Cancelled" if cancel.is_set() else ""
                    render_results()
                except Exception as ex:
                    ui.notify(f"Planning failed: {ex}", color="negative")
                    status.text = ""
                finally:
                    state["cancel"] = None
                    run_btn.enable()
                    cancel_btn.set_visibility(False)

            def cancel_planner() -> None:
                cancel = state.get("cancel")
                if cancel is not None:
                    cancel.set()

            run_btn.on_click(run_planner)
            cancel_btn.on_click(cancel_planner)

    @ui.page("/history")
    def history_page() -> None:
        render_nav(active="history")
        with page_container():
            ui.label("Execution history").classes("text-2xl font-semibold")
            ui.label("Revoking an execution restores the coil weight and the demand balances it booked.").classes(
                "cp-subtitle"
            )

            records = repo.list_executions()
            rows = [
                {
                    "record_id": r.record_id,
                    "created_at": r.created_at,
                    "coil_code": r.coil_code,
                    "plan_name": r.plan_name,
                    "consumed": r.total_consumed_weight,
                    "efficiency": r.efficiency,
                    "segments": len(r.segments),
                    "pieces": sum(i.pieces for i in r.impacts),
                    "materials": ", ".join(sorted({i.material_code for i in r.impacts})),
                }
                for r in records
            ]
            tbl = ui.table(
                columns=[
                    {"name": "created_at", "label": "Executed", "field": "created_at", "sortable": True},
                    {"name": "coil_code", "label": "Coil", "field": "coil_code"},
                    {"name": "plan_name", "label": "Plan", "field": "plan_name"},
                    {"name": "consumed", "label": "Consumed (kg)", "field": "consumed"},
                    {"name": "efficiency", "label": "Eff. %", "field": "efficiency"},
                    {"name": "segments", "label": "Segments", "field": "segments"},
                    {"name": "pieces", "label": "Pieces", "field": "pieces"},
                    {"name": "materials", "label": "Materials", "field": "materials"},
                ],
                rows=rows,
                row_key="record_id",
                selection="single",
                pagination=25,
            ).classes("w-full cp-table").props("dense flat bordered")

            def revoke(record_id: str) -> None:
                try:
                    summary = repo.revoke_execution(record_id)
                except LedgerError as ex:
                    ui.notify(str(ex), color="negative")
                    return
                msg = f"Revoked: {summary['demand_lines_restored']} demand line(s) restored"
                if not summary["coil_restored"]:
                    ui.notify(msg + "; the coil no longer exists so its weight was not restored", color="warning")
                else:
                    ui.notify(msg)
                ui.navigate.reload()

            def revoke_selected() -> None:
                selected = list(tbl.selected or [])
                if not selected:
                    ui.notify("Select an execution first", color="warning")
                    return
                rid = selected[0]["record_id"]
                confirm("Revoke this execution?", lambda: revoke(rid))

            def download_csv() -> None:
                ui.download.content(repo.export_history_csv(), export_filename())

            with ui.row().classes("w-full justify-end gap-2"):
                ui.button("Revoke", icon="undo", color="negative", on_click=revoke_selected).props("outline")
                ui.button("Export CSV", icon="download", on_click=download_csv).props("outline")

    @ui.page("/settings")
    def settings_page() -> None:
        render_nav(active="settings")
        with page_container():
            ui.label("Solver settings").classes("text-2xl font-semibold")
            ui.label("Values are stored in the database and apply to the next planning run.").classes("cp-subtitle")

            current = asdict(repo.get_solver_config())
            defaults = asdict(SolverConfig())
            inputs: dict[str, ui.number] = {}
            with ui.card().classes("p-4"):
                with ui.grid(columns=3).classes("gap-3"):
                    for f in fields(SolverConfig):
                        inputs[f.name] = ui.number(
                            f.name.replace("_", " "),
                            value=current[f.name],
                            min=0,
                        ).props(f"hint='default {defaults[f.name]:g}'").classes("w-56")

                def save() -> None:
                    try:
                        for name, el in inputs.items():
                            if el.value is None:
                                continue
                            if float(el.value) != float(current[name]):
                                repo.set_config(key=f"{SOLVER_CONFIG_PREFIX}{name}", value=str(el.value))
                    except ValueError as ex:
                        ui.notify(str(ex), color="negative")
                        return
                    repo.log_audit("config", "Solver settings updated")
                    ui.notify("Settings saved")

                ui.button("Save", on_click=save).props("unelevated color=primary")

            ui.label("Audit log").classes("text-lg font-semibold pt-4")
            ui.table(
                columns=[
                    {"name": "timestamp", "label": "When", "field": "timestamp"},
                    {"name": "category", "label": "Category", "field": "category"},
                    {"name": "message", "label": "Message", "field": "message"},
                ],
                rows=[asdict(e) for e in repo.get_recent_audit_entries(limit=100)],
                row_key="id",
            ).classes("w-full cp-table").props("dense flat bordered")
