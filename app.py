import logging
from typing import Any, Callable, Dict, List

import pandas as pd
import plotly.graph_objects as go
import pydeck as pdk
import streamlit as st

import crm
import repository as repo
from auth import create_user, verify_user
from config import Settings
from db import FetchFailure, RowStore, bootstrap_sqlite, get_engine
from degradation import MetricKind, cumulative_segments, metric_kind, project_series, split_at_retirement
from filters import FilterOptions, apply_filters, capacity_bounds, distinct_values, search_units
from grouping import aggregate_plants, group_transaction_nodes
from maplayout import (
    ChildNode,
    ExpansionController,
    GlobalMarkerLayer,
    MapState,
    MarkerElement,
    MercatorViewport,
    NodeKind,
    legend_counts,
    marker_style,
)
from normalize import get_value, to_plant_units
from parsing import parse_number, safe_str
from stats import (
    METRIC_LABELS,
    METRICS,
    country_rollup,
    impact_plant_names,
    match_impact,
    retirement_year,
    summary_stats,
    top_plants,
)

st.set_page_config(page_title="CoalTrack", layout="wide")

SETTINGS = Settings.from_env()
logging.basicConfig(level=SETTINGS.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("coaltrack")

ENGINE = get_engine(SETTINGS.database_url)
if ENGINE.dialect.name == "sqlite":
    bootstrap_sqlite(ENGINE)
STORE = RowStore(ENGINE, page_size=SETTINGS.page_size)


# =========================
# Auth
# =========================
def require_login():
    if "user" not in st.session_state:
        st.session_state.user = None

    if st.session_state.user:
        return st.session_state.user

    st.title("CoalTrack")
    st.caption("Login to continue.")
    tab1, tab2 = st.tabs(["Login", "Create account"])

    with tab1:
        email = st.text_input("Email", key="login_email")
        pw = st.text_input("Password", type="password", key="login_pw")
        if st.button("Login"):
            try:
                u = verify_user(ENGINE, email, pw)
            except Exception as e:
                logger.error("login failed: %s", e)
                u = None
            if u:
                st.session_state.user = u
                st.rerun()
            else:
                st.error("Invalid credentials.")

    with tab2:
        name = st.text_input("Full name", key="signup_name")
        email = st.text_input("Email", key="signup_email")
        pw = st.text_input("Password", type="password", key="signup_pw")
        if st.button("Create account"):
            try:
                create_user(ENGINE, email, pw, name)
                st.success("Account created. Please login.")
            except Exception as e:
                st.error(f"Could not create account: {e}")

    st.stop()


user = require_login()
AUTHOR = user.author

# =========================
# Session-held state
# =========================
if "cache" not in st.session_state:
    st.session_state.cache = repo.DataCache()
    st.session_state.dirty = set()
if "viewport" not in st.session_state:
    st.session_state.viewport = MercatorViewport(width=SETTINGS.map_width, height=SETTINGS.map_height)
    st.session_state.map_state = MapState()
    st.session_state.expansion = ExpansionController(st.session_state.viewport, st.session_state.map_state)
    st.session_state.global_layer = GlobalMarkerLayer(
        st.session_state.viewport,
        st.session_state.map_state,
        batch_size=SETTINGS.marker_batch_size,
        pause=SETTINGS.marker_batch_pause,
    )
    st.session_state.global_signature = None
    st.session_state.new_project_keys = set()


def load_cached(key: str, loader: Callable[[], Any], label: str) -> Any:
    """
    Load through the last-good-value cache. A failed reload keeps showing the
    previous data; a failed first load stops the page with a retry button.
    """
    cache: repo.DataCache = st.session_state.cache
    if cache.has(key) and key not in st.session_state.dirty:
        return cache.get(key)
    try:
        value = cache.refresh(key, loader)
        st.session_state.dirty.discard(key)
        return value
    except FetchFailure as e:
        st.error(f"Could not load {label}: {e.cause}")
        st.button("Retry", key=f"retry_{key}")
        if cache.has(key):
            st.warning(f"Showing the last loaded {label}.")
            return cache.get(key)
        st.stop()


def mark_dirty(*keys: str) -> None:
    st.session_state.dirty.update(keys)


def projects() -> List[Dict[str, Any]]:
    return load_cached("projects", lambda: repo.load_projects(STORE), "projects")


def global_plants() -> List[Dict[str, Any]]:
    return load_cached("global_plants", lambda: repo.load_global_plants(STORE), "global plants")


def impact_results(granularity: str) -> List[Dict[str, Any]]:
    return load_cached(f"impact_{granularity}", lambda: repo.load_impact_results(STORE, granularity), f"{granularity} impact results")


def transactions() -> List[Dict[str, Any]]:
    return load_cached("transactions", lambda: crm.load_transactions(STORE), "transactions")


def _rgba(hex_color: str, opacity: float = 1.0) -> List[int]:
    h = hex_color.lstrip("#")
    return [int(h[0:2], 16), int(h[2:4], 16), int(h[4:6], 16), int(round(opacity * 255))]


# =========================
# UI
# =========================
st.sidebar.header("CoalTrack")
st.sidebar.caption(f"Logged in as {user.name or user.email} ({user.initials})")

if st.sidebar.button("Logout"):
    st.session_state.expansion.unmount()
    st.session_state.global_layer.hide()
    st.session_state.user = None
    st.rerun()

if st.sidebar.button("Refresh data"):
    mark_dirty("projects", "global_plants", "impact_lifetime", "impact_annual", "transactions")

page = st.sidebar.radio("Navigate", ["Map Explorer", "Projects", "Pipeline", "Impact", "Degradation"])

if page != "Map Explorer":
    # leaving the map cancels pending marker batches and drops the expansion
    st.session_state.expansion.unmount()
    st.session_state.global_layer.hide()
    st.session_state.global_signature = None

# -----------------------------------
# PAGE: Map Explorer
# -----------------------------------
if page == "Map Explorer":
    st.title("Map Explorer")
    viewport: MercatorViewport = st.session_state.viewport
    map_state: MapState = st.session_state.map_state
    expansion: ExpansionController = st.session_state.expansion
    layer: GlobalMarkerLayer = st.session_state.global_layer

    project_units = to_plant_units(projects())
    plants = aggregate_plants(project_units)
    nodes = group_transaction_nodes(transactions())

    st.sidebar.subheader("Global plants")
    show_global = st.sidebar.checkbox("Show global coal plants", value=False, key="show_global")
    options = FilterOptions()
    global_units = []
    if show_global:
        all_global = to_plant_units(global_plants())
        lo, hi = capacity_bounds(all_global)
        cap_range = None
        if hi > lo:
            cap_range = st.sidebar.slider("Capacity (MW)", float(lo), float(hi), (float(lo), float(hi)), key="f_capacity")
            if cap_range == (lo, hi):
                cap_range = None
        countries = st.sidebar.multiselect("Country", distinct_values(all_global, "country"), key="f_country")
        tech = st.sidebar.multiselect("Combustion technology", distinct_values(all_global, "combustion_technology"), key="f_tech")
        coal = st.sidebar.multiselect("Coal type", distinct_values(all_global, "coal_type"), key="f_coal")
        subregions = st.sidebar.multiselect("Subregion", distinct_values(all_global, "subregion"), key="f_subregion")
        captive = st.sidebar.radio("Captive", ["all", "yes", "no"], horizontal=True, key="f_captive")
        status = st.sidebar.selectbox("Status", ["all"] + distinct_values(all_global, "status"), key="f_status")
        limit_lifetime = st.sidebar.checkbox("Limit remaining lifetime", key="f_lifetime_on")
        max_life = st.sidebar.slider("Max remaining lifetime (years)", 0, 60, 20, key="f_lifetime") if limit_lifetime else None
        only_impact = st.sidebar.checkbox("Only plants with impact results", key="f_impact")
        options = FilterOptions(
            capacity_range=cap_range,
            countries=frozenset(countries),
            combustion_tech=frozenset(tech),
            coal_types=frozenset(coal),
            subregions=frozenset(subregions),
            captive=captive,
            max_remaining_lifetime=max_life,
            status=status,
            impact_plant_names=impact_plant_names(impact_results("lifetime")) if only_impact else frozenset(),
        )
        global_units = apply_filters(all_global, options)

    signature = (show_global, options, len(global_units))
    if signature != st.session_state.global_signature:
        if show_global:
            items = [
                ((u.longitude, u.latitude),
                 MarkerElement(NodeKind.GLOBAL, f"{u.plant_name}_{u.latitude_raw}_{u.longitude_raw}", marker_style(NodeKind.GLOBAL, u.status), u))
                for u in global_units
            ]
            with st.spinner(f"Adding {len(items)} plants..."):
                layer.show(items)
        else:
            layer.hide()
        st.session_state.global_signature = signature

    # --- camera + selection controls
    c1, c2, c3 = st.columns([2, 2, 1])
    plant_by_label = {f"{p.plant_name} ({p.country})": p for p in plants}
    chosen_plant = c1.selectbox("Go to project plant", ["(none)"] + list(plant_by_label), key="map_goto")
    if c1.button("Select plant") and chosen_plant != "(none)":
        p = plant_by_label[chosen_plant]
        expansion.select(p.key, (p.longitude, p.latitude))

    node_by_label = {f"{n.name} ({len(n.transactions)} deals)": n for n in nodes}
    chosen_node = c2.selectbox("Transaction node", ["(none)"] + list(node_by_label), key="map_node")
    if c2.button("Expand / collapse") and chosen_node != "(none)":
        n = node_by_label[chosen_node]
        children = [
            ChildNode(
                key=f"{n.key}#{t.get('id')}",
                status=safe_str(t.get("transaction_status")),
                style=marker_style(NodeKind.TRANSACTION, safe_str(t.get("transaction_status"))),
                data=t,
            )
            for t in n.transactions
        ]
        expansion.toggle(n.key, (n.longitude, n.latitude), children)

    if map_state.selected_key and c3.button("Back"):
        expansion.close_selection()

    zoom = c3.slider("Zoom", 1.0, 14.0, float(viewport.zoom), 0.5)
    if zoom != viewport.zoom:
        viewport.set_zoom(zoom)

    # --- layers
    project_rows = []
    for p in plants:
        style = marker_style(NodeKind.PROJECT, p.status, newly_added=p.key in st.session_state.new_project_keys)
        x, y = viewport.project(p.longitude, p.latitude)
        half = style.size / 2
        tri = [viewport.unproject(x, y - half), viewport.unproject(x + half, y + half), viewport.unproject(x - half, y + half)]
        project_rows.append({
            "polygon": [list(v) for v in tri],
            "fill": _rgba(style.color, style.opacity),
            "stroke": [59, 130, 246, 255] if "#3b82f6" in style.border else [255, 255, 255, 255],
            "name": p.plant_name,
            "info": f"{p.capacity_mw:,.0f} MW, {p.unit_count} unit(s), {p.status or 'Unknown'}",
        })

    global_rows = []
    for m in viewport.markers:
        if m.element.kind is not NodeKind.GLOBAL:
            continue
        s = m.element.style
        u = m.element.data
        global_rows.append({
            "lng": m.lng_lat[0], "lat": m.lng_lat[1], "fill": _rgba(s.color, s.opacity), "radius": s.size / 2,
            "name": u.plant_name, "info": f"{u.capacity_mw:,.0f} MW, {u.status or 'Unknown'}",
        })

    node_rows = []
    for n in nodes:
        rag = safe_str(n.transactions[0].get("transaction_status")) if n.transactions else ""
        s = marker_style(NodeKind.TRANSACTION, rag)
        node_rows.append({
            "lng": n.longitude, "lat": n.latitude, "fill": _rgba(s.color), "radius": s.size / 2,
            "label": s.label, "name": n.name, "info": f"{len(n.transactions)} deal(s), {n.capacity_mw:,.0f} MW",
        })

    child_rows, line_rows = [], []
    for child in expansion.children:
        lng, lat = viewport.unproject(*child.position)
        t = child.data
        child_rows.append({
            "lng": lng, "lat": lat, "fill": _rgba(child.style.color), "radius": child.style.size / 2,
            "label": child.style.label, "name": safe_str(t.get("project_name")) or safe_str(t.get("plant_name")),
            "info": crm.STAGE_LABELS.get(safe_str(t.get("transaction_stage")), ""),
        })
    for line in expansion.lines:
        line_rows.append({
            "start": list(viewport.unproject(*line.start)),
            "end": list(viewport.unproject(*line.end)),
            "color": _rgba(line.color),
        })

    layers = [
        pdk.Layer("ScatterplotLayer", global_rows, get_position=["lng", "lat"], get_fill_color="fill",
                  get_radius="radius", radius_units="pixels", stroked=True, get_line_color=[255, 255, 255],
                  line_width_min_pixels=1, pickable=True),
        pdk.Layer("PolygonLayer", project_rows, get_polygon="polygon", get_fill_color="fill",
                  get_line_color="stroke", line_width_min_pixels=3, pickable=True),
        pdk.Layer("LineLayer", line_rows, get_source_position="start", get_target_position="end",
                  get_color="color", get_width=2),
        pdk.Layer("ScatterplotLayer", node_rows + child_rows, get_position=["lng", "lat"], get_fill_color="fill",
                  get_radius="radius", radius_units="pixels", stroked=True, get_line_color=[255, 255, 255],
                  line_width_min_pixels=2, pickable=True),
        pdk.Layer("TextLayer", node_rows + child_rows, get_position=["lng", "lat"], get_text="label",
                  get_color=[255, 255, 255], get_size=12),
    ]
    cam = viewport.camera
    st.pydeck_chart(
        pdk.Deck(
            layers=layers,
            initial_view_state=pdk.ViewState(longitude=cam.center[0], latitude=cam.center[1], zoom=cam.zoom),
            map_style=None,
            tooltip={"text": "{name}\n{info}"},
        ),
        height=SETTINGS.map_height,
    )

    counts = legend_counts([p.status for p in plants] + [u.status for u in global_units])
    st.caption(" | ".join(f"{k}: {v}" for k, v in counts.items()))

    if map_state.selected_key:
        sel = next((p for p in plants if p.key == map_state.selected_key), None)
        if sel:
            st.subheader(sel.plant_name)
            st.write(f"{sel.country} | {sel.owner or 'Unknown owner'} | {sel.capacity_mw:,.1f} MW")
            st.dataframe(pd.DataFrame([{"Unit": d.unit_name, "Capacity (MW)": d.capacity} for d in sel.unit_details]),
                         use_container_width=True)
            matched = match_impact(impact_results("lifetime"), sel.plant_name)
            if matched:
                totals = summary_stats(matched).totals
                cols = st.columns(4)
                for i, m in enumerate(["avoided_co2", "avoided_deaths", "investment", "permanent_jobs"]):
                    cols[i].metric(METRIC_LABELS[m], f"{totals[m]:,.1f}")

    if expansion.children:
        st.subheader("Expanded deals")
        st.dataframe(pd.DataFrame([{
            "Project": safe_str(c.data.get("project_name")),
            "Stage": crm.STAGE_LABELS.get(safe_str(c.data.get("transaction_stage")), ""),
            "RAG": c.status,
            "Countries": crm.transaction_countries(c.data),
        } for c in expansion.children]), use_container_width=True)

# -----------------------------------
# PAGE: Projects
# -----------------------------------
elif page == "Projects":
    st.title("Projects")
    rows = projects()

    tab_data, tab_detail, tab_create, tab_recent = st.tabs(["Data", "Project detail", "Create from plant", "Recent changes"])

    with tab_data:
        df = pd.DataFrame(rows)
        show_all = st.toggle("Show all columns", value=False, key="data_all_cols")
        if not df.empty and not show_all:
            df = df[[c for c in repo.KEY_COLUMNS if c in df.columns]]
        st.dataframe(df, use_container_width=True)
        st.download_button("Download CSV", df.to_csv(index=False).encode("utf-8"), file_name="projects.csv", mime="text/csv")

    with tab_detail:
        if not rows:
            st.info("No projects yet.")
        else:
            by_label = {f"{r.get('id')} - {safe_str(r.get('plant_name'))} {safe_str(r.get('unit_name'))}".strip(): r for r in rows}
            label = st.selectbox("Project", list(by_label), key="proj_pick")
            project = by_label[label]
            pid = project["id"]

            info = {f.label: repo.project_value(project, f) for f in repo.INFO_FIELDS}
            st.dataframe(pd.DataFrame([info]), use_container_width=True)

            with st.form(f"edit_{pid}"):
                edited = {}
                for f in repo.EDITABLE_FIELDS:
                    current = repo.project_value(project, f)
                    wkey = f"edit_{pid}_{f.key}"
                    if f.kind == "select":
                        opts = list(f.options)
                        if current not in opts:
                            opts = [current] + opts
                        edited[f.key] = st.selectbox(f.label, opts, index=opts.index(current), key=wkey)
                    elif f.kind == "textarea":
                        edited[f.key] = st.text_area(f.label, value=current, key=wkey)
                    else:
                        edited[f.key] = st.text_input(f.label, value=current, key=wkey)
                if st.form_submit_button("Save changes"):
                    try:
                        changes = repo.save_project_edits(STORE, project, edited, AUTHOR)
                        mark_dirty("projects")
                        if changes:
                            st.success(f"Saved {len(changes)} change(s).")
                        else:
                            st.info("Nothing changed.")
                    except FetchFailure as e:
                        # widget values stay in session_state for another attempt
                        st.error(f"Could not save: {e.cause}")

            note = st.text_area("Add a note", key=f"note_{pid}")
            if st.button("Add note", key=f"add_note_{pid}"):
                try:
                    repo.add_project_note(STORE, project, note, AUTHOR)
                    st.success("Note added.")
                except (ValueError, FetchFailure) as e:
                    st.error(str(e))

            st.subheader("History")
            try:
                logs = repo.load_project_logs(STORE, pid)
            except FetchFailure as e:
                st.error(f"Could not load history: {e.cause}")
                st.button("Retry", key=f"retry_logs_{pid}")
                logs = []
            for entry in logs:
                head = f"**{entry.get('field_changed')}** by {entry.get('updated_by') or 'unknown'} at {entry.get('created_at')}"
                if entry.get("field_changed") == "Note Added":
                    st.markdown(f"{head}: {entry.get('notes')}")
                else:
                    st.markdown(f"{head}: `{entry.get('old_value') or '-'}` -> `{entry.get('new_value') or '-'}`")

    with tab_create:
        term = st.text_input("Search global plants (name, unit or country)", key="create_search")
        hits = search_units(to_plant_units(global_plants()), term) if term else []
        if term and not hits:
            st.info("No matching plants.")
        if hits:
            by_label = {f"{u.plant_name} / {u.unit_name} ({u.country}, {u.capacity_mw:,.0f} MW)": u for u in hits}
            label = st.selectbox("Plant", list(by_label), key="create_pick")
            prefill = repo.project_from_global_plant(by_label[label].row)
            with st.form("create_project"):
                form = {}
                for f in repo.INFO_FIELDS:
                    form[f.key] = st.text_input(f.label, value=prefill.get(f.key, ""), key=f"create_{label}_{f.key}")
                form["operational_status"] = prefill["operational_status"]
                form["planned_retirement_year"] = prefill["planned_retirement_year"]
                if st.form_submit_button("Create project"):
                    try:
                        created = repo.create_project(STORE, form, AUTHOR)
                        mark_dirty("projects")
                        unit = to_plant_units([created])[0]
                        st.session_state.new_project_keys.add(f"{unit.plant_name}_{unit.latitude_raw}_{unit.longitude_raw}")
                        st.success(f"Project {created['id']} created.")
                    except ValueError as e:
                        st.warning(str(e))
                    except FetchFailure as e:
                        st.error(f"Could not create project: {e.cause}")

    with tab_recent:
        try:
            recent = repo.recent_changes(STORE)
        except FetchFailure as e:
            st.error(f"Could not load recent changes: {e.cause}")
            st.button("Retry", key="retry_recent")
            recent = []
        st.dataframe(pd.DataFrame(recent), use_container_width=True)

# -----------------------------------
# PAGE: Pipeline
# -----------------------------------
elif page == "Pipeline":
    st.title("Pipeline")
    st.caption("Track coal retirement projects from ideation to transaction complete")
    all_txns = transactions()

    f1, f2, f3 = st.columns(3)
    f4, f5, f6 = st.columns(3)
    flt = crm.PipelineFilter(
        search=f1.text_input("Search", key="pl_search"),
        country=f2.selectbox("Country", [""] + sorted({safe_str(t.get("country")) for t in all_txns} - {""}), key="pl_country"),
        rag=f3.selectbox("RAG status", [""] + crm.RAG_STATUSES, key="pl_rag"),
        partner=f4.selectbox("Delivery partner", [""] + crm.DELIVERY_PARTNERS, key="pl_partner"),
        engagement=f5.selectbox("Engagement", [""] + crm.ENGAGEMENT_IDS, key="pl_engagement"),
        priority=f6.selectbox("Priority", [""] + [p for p, _ in crm.PRIORITY_LEVELS], key="pl_priority"),
    )
    active = crm.filter_pipeline(all_txns, flt)

    s = crm.pipeline_summary(active)
    m = st.columns(6)
    m[0].metric("Projects", s.total)
    m[1].metric("Deal size", f"${s.total_deal_size:,.0f}")
    m[2].metric("Capacity (MW)", f"{s.total_capacity_mw:,.0f}")
    m[3].metric("Avg confidence", f"{s.avg_confidence:.0f}%")
    m[4].metric("G / A / R", f"{s.green} / {s.amber} / {s.red}")
    m[5].metric("In delivery", s.in_delivery, help=f"{s.countries} countries")

    view = st.radio("View", ["By engagement", "By stage", "List"], horizontal=True, key="pl_view")
    if view == "List":
        st.dataframe(pd.DataFrame(active), use_container_width=True)
    else:
        if view == "By engagement":
            grouped, labels = crm.group_by_engagement(active), dict(crm.ENGAGEMENT_STATUSES)
        else:
            grouped, labels = crm.group_by_stage(active), crm.STAGE_LABELS
            grouped = {k: v for k, v in grouped.items() if k not in crm.INACTIVE_STAGES}
        cols = st.columns(len(grouped))
        for col, (gid, items) in zip(cols, grouped.items()):
            col.markdown(f"**{labels[gid]}** ({len(items)})")
            for t in items:
                col.caption(f"{safe_str(t.get('project_name')) or safe_str(t.get('plant_name'))} | "
                            f"{crm.transaction_countries(t)} | {safe_str(t.get('transaction_status')) or '-'}")

    st.divider()
    st.subheader("Transaction")
    by_label = {f"{t.get('id')} - {safe_str(t.get('project_name')) or safe_str(t.get('plant_name'))}": t for t in all_txns}
    choice = st.selectbox("Open", ["(new)"] + list(by_label), key="pl_open")
    txn = by_label.get(choice, {})
    tid = txn.get("id", "new")

    steps_key = f"steps_{tid}"
    if steps_key not in st.session_state:
        st.session_state[steps_key] = crm.parse_next_steps(txn.get("transaction_next_steps"))

    with st.form(f"txn_{tid}"):
        a, b = st.columns(2)
        data = {
            "plant_name": a.text_input("Plant name", value=safe_str(txn.get("plant_name")), key=f"t_{tid}_plant"),
            "project_name": b.text_input("Project name", value=safe_str(txn.get("project_name")), key=f"t_{tid}_project"),
            "country": a.text_input("Country", value=safe_str(txn.get("country")), key=f"t_{tid}_country"),
            "owner": b.text_input("Owner", value=safe_str(txn.get("owner")), key=f"t_{tid}_owner"),
            "location_coordinates": a.text_input("Location (lat, lng)", value=safe_str(txn.get("location_coordinates")), key=f"t_{tid}_loc"),
            "capacity_mw": b.number_input("Capacity (MW)", min_value=0.0, value=parse_number(txn.get("capacity_mw")), key=f"t_{tid}_cap"),
        }
        stage_now = safe_str(txn.get("transaction_stage")) or "ideation"
        data["transaction_stage"] = a.selectbox("Stage", crm.STAGE_IDS, index=crm.STAGE_IDS.index(stage_now) if stage_now in crm.STAGE_IDS else 0,
                                                format_func=crm.STAGE_LABELS.get, key=f"t_{tid}_stage")
        rag_now = safe_str(txn.get("transaction_status"))
        rag_opts = [""] + crm.RAG_STATUSES
        data["transaction_status"] = b.selectbox("RAG status", rag_opts, index=rag_opts.index(rag_now) if rag_now in rag_opts else 0, key=f"t_{tid}_rag")
        eng_now = safe_str(txn.get("engagement_status")) or "no_engagement"
        data["engagement_status"] = a.selectbox("Engagement", crm.ENGAGEMENT_IDS, index=crm.ENGAGEMENT_IDS.index(eng_now) if eng_now in crm.ENGAGEMENT_IDS else 0,
                                                format_func=dict(crm.ENGAGEMENT_STATUSES).get, key=f"t_{tid}_eng")
        pri_ids = [""] + [p for p, _ in crm.PRIORITY_LEVELS]
        pri_now = safe_str(txn.get("priority"))
        data["priority"] = b.selectbox("Priority", pri_ids, index=pri_ids.index(pri_now) if pri_now in pri_ids else 0, key=f"t_{tid}_pri")
        data["transaction_confidence_rating"] = a.slider("Confidence (%)", 0, 100, int(parse_number(txn.get("transaction_confidence_rating"))), key=f"t_{tid}_conf")
        data["estimated_deal_size"] = b.number_input("Estimated deal size (USD)", min_value=0.0, value=parse_number(txn.get("estimated_deal_size")), key=f"t_{tid}_deal")
        data["funded_delivery_partners"] = st.multiselect("Delivery partners", crm.DELIVERY_PARTNERS,
                                                          default=[p for p in crm.partners_of(txn) if p in crm.DELIVERY_PARTNERS], key=f"t_{tid}_partners")
        data["notes"] = st.text_area("Notes", value=safe_str(txn.get("notes")), key=f"t_{tid}_notes")
        submitted = st.form_submit_button("Save transaction")

    st.markdown("**Next steps**")
    steps = st.session_state[steps_key]
    for i, step in enumerate(steps):
        c1, c2 = st.columns([6, 1])
        if c1.checkbox(step.text, value=step.completed, key=f"step_{tid}_{i}_{step.text}") != step.completed:
            st.session_state[steps_key] = crm.toggle_next_step(steps, i)
            st.rerun()
        if c2.button("Remove", key=f"step_rm_{tid}_{i}"):
            st.session_state[steps_key] = crm.remove_next_step(steps, i)
            st.rerun()
    new_step = st.text_input("New step", key=f"step_new_{tid}")
    if st.button("Add step", key=f"step_add_{tid}"):
        st.session_state[steps_key] = crm.add_next_step(steps, new_step)
        st.rerun()

    if submitted:
        data["transaction_next_steps"] = st.session_state[steps_key]
        try:
            if txn:
                crm.save_transaction(STORE, txn, data, AUTHOR)
            else:
                crm.create_transaction(STORE, data, AUTHOR)
            mark_dirty("transactions")
            st.success("Transaction saved.")
        except ValueError as e:
            st.warning(str(e))
        except FetchFailure as e:
            st.error(f"Could not save transaction: {e.cause}")

    if txn:
        if st.button("Delete transaction", key=f"t_del_{tid}"):
            try:
                crm.delete_transaction(STORE, tid)
                mark_dirty("transactions")
                st.success("Deleted.")
            except FetchFailure as e:
                st.error(f"Could not delete: {e.cause}")

        st.markdown("**Activity**")
        with st.form(f"activity_{tid}"):
            act_type = st.selectbox("Type", [t for t in crm.ACTIVITY_TYPES if t != "stage_change"], key=f"act_type_{tid}")
            act_title = st.text_input("Title", key=f"act_title_{tid}")
            act_desc = st.text_area("Description", key=f"act_desc_{tid}")
            if st.form_submit_button("Log activity"):
                try:
                    crm.add_activity(STORE, tid, act_type, act_title, act_desc, AUTHOR)
                except ValueError as e:
                    st.warning(str(e))
                except FetchFailure as e:
                    st.error(f"Could not log activity: {e.cause}")
        try:
            acts = crm.load_activities(STORE, tid)
        except FetchFailure as e:
            st.error(f"Could not load activity: {e.cause}")
            acts = []
        for act in acts:
            st.markdown(f"`{act['type']}` **{act['title']}** by {act.get('author') or 'unknown'} at {act['created_at']}")
            if act.get("description"):
                st.caption(act["description"])

# -----------------------------------
# PAGE: Impact
# -----------------------------------
elif page == "Impact":
    st.title("Impact")
    granularity = st.radio("Results", ["lifetime", "annual"], horizontal=True, key="imp_gran")
    rows = impact_results(granularity)

    s = summary_stats(rows)
    st.caption(f"{s.plant_count} plants, {s.unit_count} units")
    cols = st.columns(4)
    for i, (metric, total) in enumerate(s.totals.items()):
        cols[i % 4].metric(METRIC_LABELS[metric], f"{total:,.1f}")

    st.subheader("By country")
    st.dataframe(country_rollup(rows), use_container_width=True)

    st.subheader("Top plants")
    c1, c2, c3 = st.columns(3)
    metric = c1.selectbox("Metric", list(METRICS), format_func=METRIC_LABELS.get, key="imp_metric")
    ascending = c2.toggle("Lowest first", value=False, key="imp_asc")
    n = c3.number_input("Show", min_value=1, max_value=200, value=SETTINGS.top_n, key="imp_n")
    ranked = top_plants(rows, metric, ascending=ascending, n=int(n))
    st.dataframe(ranked, use_container_width=True)
    if not ranked.empty:
        fig = go.Figure(go.Bar(x=ranked["plant_name"], y=ranked[metric], marker_color="#10b981"))
        fig.update_layout(yaxis_title=METRIC_LABELS[metric], height=400, margin=dict(l=10, r=10, t=30, b=10))
        st.plotly_chart(fig, use_container_width=True)

# -----------------------------------
# PAGE: Degradation
# -----------------------------------
elif page == "Degradation":
    st.title("Degradation projection")
    rows = impact_results("annual")
    names = sorted({safe_str(get_value(r, "Unique plant name", "unique_plant_name")) for r in rows} - {""})

    c1, c2 = st.columns(2)
    plant = c1.selectbox("Plant", ["(manual)"] + names, key="deg_plant")
    metric = c2.selectbox("Metric", list(METRICS), format_func=METRIC_LABELS.get, key="deg_metric")
    matched = match_impact(rows, plant) if plant != "(manual)" else []
    base_default = summary_stats(matched).totals[metric] / max(len(matched), 1) if matched else 0.0
    retire_default = retirement_year(matched)

    c3, c4, c5 = st.columns(3)
    base = c3.number_input("Base annual value", value=float(base_default), key=f"deg_base_{plant}_{metric}")
    start = int(c4.number_input("Start year", value=2025, step=1, key="deg_start"))
    end = int(c5.number_input("End year", value=2050, step=1, key="deg_end"))
    retirement = int(c3.number_input("Retirement year", value=int(retire_default or 2035), step=1, key=f"deg_retire_{plant}"))
    eff = c4.number_input("Efficiency degradation (%/yr)", value=0.5, step=0.1, key="deg_eff")
    cap = c5.number_input("Capacity factor decline (%/yr)", value=1.0, step=0.1, key="deg_cap")
    enabled = st.checkbox("Apply degradation", value=True, key="deg_on")

    if end < start:
        st.warning("End year must not be before start year.")
        st.stop()

    kind = metric_kind(metric)
    points = project_series(base, start, end, eff, cap, degradation_enabled=enabled, kind=kind)
    highlighted, _ = split_at_retirement(points, retirement)
    head, tail = cumulative_segments(points, retirement)
    show_annual = st.checkbox("Show per-year values", value=False, key="deg_annual")

    fig = go.Figure()
    fig.add_trace(go.Scatter(x=[y for y, _ in head], y=[v for _, v in head],
                             mode="lines+markers", name="Cumulative until retirement", line=dict(color="#10b981", width=3)))
    if tail:
        fig.add_trace(go.Scatter(x=[y for y, _ in tail], y=[v for _, v in tail], mode="lines",
                                 name="After retirement", opacity=0.3, line=dict(color="#6b7280", width=2, dash="dot")))
    if show_annual:
        fig.add_trace(go.Scatter(x=[p.year for p in points], y=[p.value for p in points], mode="lines",
                                 name="Per year", line=dict(color="#3b82f6", width=1)))
    fig.add_vline(x=retirement, line_dash="dash", line_color="#f59e0b")
    fig.update_layout(yaxis_title=f"Cumulative {METRIC_LABELS[metric]}", height=420, margin=dict(l=10, r=10, t=30, b=10))
    st.plotly_chart(fig, use_container_width=True)

    st.caption("Emissions metrics use both efficiency and capacity factors; other metrics use the capacity factor only."
               if kind is MetricKind.EMISSIONS else "This metric follows the capacity factor only.")
    total_until = highlighted[-1].cumulative if highlighted else 0.0
    st.metric("Cumulative until retirement", f"{total_until:,.2f}")
    st.dataframe(pd.DataFrame([{"Year": p.year, "Value": p.value, "Cumulative": p.cumulative} for p in points]),
                 use_container_width=True)
