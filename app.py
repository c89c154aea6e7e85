"""
MergeEats Dispatch - Consolidation Dashboard
============================================

Dashboard for comparing consolidated dispatch against the no-merge baseline.

Features:
- KPI comparison between baseline and consolidation runs
- pydeck map of orders coloured by group
- Group and event tables
- Configurable engine and simulation parameters
"""

import streamlit as st
import pandas as pd
import pydeck as pdk
import hashlib
from dataclasses import replace
from typing import Dict, Any, List, Optional, Tuple

from mergedispatch import config
from mergedispatch.models import GroupStatus
from mergedispatch.scoring import group_summary
from mergedispatch.settings import EngineSettings
from mergedispatch.simulation import SCENARIOS, Scenario, Simulation, generate_scenario

# =============================================================================
# PAGE CONFIG
# =============================================================================

st.set_page_config(
    page_title="MergeEats Dispatch",
    page_icon="🛵",
    layout="wide",
    initial_sidebar_state="expanded"
)

# =============================================================================
# CUSTOM STYLING
# =============================================================================

st.markdown("""
<style>
    .main .block-container {
        padding-top: 2rem;
        padding-bottom: 2rem;
    }

    /* KPI Cards */
    .kpi-card {
        background: linear-gradient(135deg, #ff7e5f 0%, #feb47b 100%);
        border-radius: 16px;
        padding: 1.5rem;
        color: white;
        text-align: center;
        box-shadow: 0 10px 40px rgba(255, 126, 95, 0.3);
    }

    .kpi-card.green {
        background: linear-gradient(135deg, #11998e 0%, #38ef7d 100%);
        box-shadow: 0 10px 40px rgba(17, 153, 142, 0.3);
    }

    .kpi-value {
        font-size: 2.5rem;
        font-weight: 800;
        margin: 0.5rem 0;
    }

    .kpi-label {
        font-size: 0.9rem;
        opacity: 0.9;
        text-transform: uppercase;
        letter-spacing: 1px;
    }

    .kpi-delta {
        font-size: 1rem;
        font-weight: 600;
        padding: 0.25rem 0.75rem;
        border-radius: 20px;
        background: rgba(255,255,255,0.2);
        display: inline-block;
        margin-top: 0.5rem;
    }

    .section-header {
        font-size: 1.5rem;
        font-weight: 700;
        color: #1a1a2e;
        margin: 2rem 0 1rem 0;
        padding-bottom: 0.5rem;
        border-bottom: 3px solid #ff7e5f;
    }

    #MainMenu {visibility: hidden;}
    footer {visibility: hidden;}
</style>
""", unsafe_allow_html=True)

# =============================================================================
# SIMULATION
# =============================================================================

@st.cache_data(show_spinner=False)
def build_scenario(name: str, seed: int) -> Scenario:
    """Generate and cache a synthetic scenario."""
    return generate_scenario(name, seed=seed)


def run_mode(scenario: Scenario, settings: EngineSettings, accept_probability: float, seed: int) -> Simulation:
    """Run one simulation and return it, so the map can read its store."""
    sim = Simulation(scenario, settings, accept_probability=accept_probability, seed=seed)
    sim.run(verbose=False)
    return sim


# =============================================================================
# MAP VISUALIZATION
# =============================================================================

def group_color(group_id: Optional[str]) -> List[int]:
    """Stable colour per group; standalone orders are grey."""
    if group_id is None:
        return [150, 150, 150, 160]
    digest = hashlib.md5(group_id.encode()).digest()
    return [digest[0], digest[1], digest[2], 220]


def render_group_map(sim: Simulation) -> None:
    """Render delivery points coloured by group, restaurants in black."""
    data = sim.get_map_data()
    orders = pd.DataFrame(data["orders"])
    restaurants = pd.DataFrame(data["restaurants"])
    if orders.empty:
        st.info("No orders to show.")
        return

    orders["color"] = orders["group_order_id"].apply(group_color)
    orders["group"] = orders["group_order_id"].fillna("standalone")

    layers = [
        pdk.Layer(
            "ScatterplotLayer",
            data=orders,
            get_position="[lng, lat]",
            get_fill_color="color",
            get_radius=60,
            pickable=True,
        ),
        pdk.Layer(
            "ScatterplotLayer",
            data=restaurants,
            get_position="[lng, lat]",
            get_fill_color=[30, 30, 30, 230],
            get_radius=90,
            pickable=True,
        ),
    ]
    view = pdk.ViewState(
        latitude=float(orders["lat"].mean()),
        longitude=float(orders["lng"].mean()),
        zoom=12,
    )
    st.pydeck_chart(pdk.Deck(
        layers=layers,
        initial_view_state=view,
        tooltip={"text": "{order_id}\n{group}\n{status}"},
    ))


# =============================================================================
# SIDEBAR
# =============================================================================

def render_sidebar() -> Optional[Tuple[Scenario, EngineSettings, float, int]]:
    """Render the sidebar configuration panel."""
    st.sidebar.markdown("## 🎛️ Configuration")
    st.sidebar.markdown("---")

    st.sidebar.markdown("### 📊 Scenario")
    scenario_name = st.sidebar.selectbox(
        "Select Scenario",
        options=list(SCENARIOS.keys()),
        index=0,
        format_func=lambda name: f"{name} ({SCENARIOS[name]['description']})",
        help="Synthetic city scenario to simulate"
    )
    seed = st.sidebar.number_input("Seed", min_value=0, value=42, step=1)

    st.sidebar.markdown("---")
    st.sidebar.markdown("### ⚙️ Engine")

    max_group_size = st.sidebar.slider(
        "Max Group Size (K)",
        min_value=2, max_value=6, value=config.MAX_GROUP_SIZE,
        help="Orders per consolidated run"
    )
    formation_window = st.sidebar.slider(
        "Formation Window (minutes)",
        min_value=1.0, max_value=10.0, value=float(config.FORMATION_WINDOW_MINS), step=0.5,
        help="How long a group stays open for new members"
    )
    merge_radius = st.sidebar.slider(
        "Merge Radius (km)",
        min_value=0.5, max_value=5.0, value=float(config.MERGE_RADIUS_KM), step=0.5,
        help="Maximum distance between co-grouped delivery addresses"
    )
    accept_probability = st.sidebar.slider(
        "Partner Accept Probability",
        min_value=0.1, max_value=1.0, value=float(config.PARTNER_ACCEPT_PROBABILITY), step=0.05,
    )

    st.sidebar.markdown("---")
    run_clicked = st.sidebar.button("🚀 Run Simulation", use_container_width=True)

    if run_clicked:
        try:
            settings = replace(
                EngineSettings.from_config(),
                max_group_size=max_group_size,
                formation_window_mins=formation_window,
                merge_radius_km=merge_radius,
            )
        except ValueError as e:
            st.sidebar.error(f"Invalid settings: {e}")
            return None
        scenario = build_scenario(scenario_name, int(seed))
        st.sidebar.success(
            f"Loaded {len(scenario.orders)} orders, {len(scenario.partners)} partners"
        )
        params = (scenario, settings, accept_probability, int(seed))
        st.session_state["params"] = params
        if "simulations" in st.session_state:
            del st.session_state["simulations"]
        return params

    if "simulations" in st.session_state:
        return st.session_state["params"]

    st.sidebar.markdown("---")
    st.sidebar.markdown("### 📖 About")
    st.sidebar.info("""
    Compares two dispatch modes:

    **Baseline**: every order gets its own run
    **Consolidation**: nearby orders share a run

    Key metric: **Trips Saved**
    """)
    return None


# =============================================================================
# KPI DISPLAY
# =============================================================================

def render_kpi_row(baseline: Dict[str, Any], merged: Dict[str, Any]) -> None:
    """Render the top KPI cards."""
    base_runs = baseline.get("trips", 0)
    merged_runs = merged.get("trips", 0)
    pct_saved = ((base_runs - merged_runs) / base_runs * 100) if base_runs > 0 else 0

    col1, col2, col3, col4 = st.columns(4)

    with col1:
        st.markdown(f"""
        <div class="kpi-card">
            <div class="kpi-label">Orders Delivered</div>
            <div class="kpi-value">{merged.get("orders_delivered", 0)}</div>
            <div class="kpi-delta">of {merged.get("total_orders", 0)}</div>
        </div>
        """, unsafe_allow_html=True)

    with col2:
        st.markdown(f"""
        <div class="kpi-card green">
            <div class="kpi-label">Trips Saved</div>
            <div class="kpi-value">{merged.get("trips_saved", 0)}</div>
            <div class="kpi-delta">↓ {pct_saved:.1f}% fewer runs</div>
        </div>
        """, unsafe_allow_html=True)

    with col3:
        st.markdown(f"""
        <div class="kpi-card">
            <div class="kpi-label">Groups Formed</div>
            <div class="kpi-value">{merged.get("groups_formed", 0)}</div>
            <div class="kpi-delta">avg size {merged.get("avg_group_size", 0):.2f}</div>
        </div>
        """, unsafe_allow_html=True)

    with col4:
        st.markdown(f"""
        <div class="kpi-card green">
            <div class="kpi-label">Fleet Distance</div>
            <div class="kpi-value">{merged.get("total_distance_km", 0):.0f} km</div>
            <div class="kpi-delta">vs {baseline.get("total_distance_km", 0):.0f} km baseline</div>
        </div>
        """, unsafe_allow_html=True)


# =============================================================================
# TABLES
# =============================================================================

def render_comparison_table(all_results: Dict[str, Dict[str, Any]]) -> None:
    """Render the baseline vs consolidation comparison table."""
    st.markdown('<div class="section-header">📊 Mode Comparison</div>', unsafe_allow_html=True)

    metrics = [
        "Orders Delivered",
        "Delivery Runs",
        "Trips Saved",
        "Groups Formed",
        "Avg Group Size",
        "Disbanded Groups",
        "Offers / Rejections",
        "Partners Used",
        "Fleet Distance",
        "Avg Delivery Time",
    ]
    table_data = []
    for metric in metrics:
        row = {"Metric": metric}
        for mode, results in all_results.items():
            row[mode.title()] = str(results.get(metric, "N/A"))
        table_data.append(row)

    st.dataframe(pd.DataFrame(table_data), use_container_width=True, hide_index=True)


def render_group_table(sim: Simulation) -> None:
    """One row per group with its members, status and merge scores."""
    st.markdown('<div class="section-header">🧺 Groups</div>', unsafe_allow_html=True)
    store = sim.engine.store
    rows = []
    for group in store.list_groups():
        summary = group_summary(group, store.get_orders(group.member_ids))
        rows.append({
            "Group": group.group_order_id,
            "Status": group.status.value,
            "Members": ", ".join(group.member_ids),
            "Cancelled": len(group.cancelled_member_ids),
            "Restaurants": ", ".join(group.restaurant_ids),
            "Partner": group.assigned_partner_id or "",
            "Merge Efficiency": summary["mergeEfficiency"],
            "Finalized": group.finalize_reason or "",
            "Disbanded": group.disband_reason or "",
        })
    if not rows:
        st.info("No groups were formed.")
        return

    df = pd.DataFrame(rows)
    counts = df["Status"].value_counts()
    st.caption(" | ".join(
        f"{status.value}: {counts.get(status.value, 0)}"
        for status in (GroupStatus.COMPLETED, GroupStatus.DISBANDED, GroupStatus.ASSIGNED)
    ))
    st.dataframe(df, use_container_width=True, hide_index=True)


def render_event_table(sim: Simulation) -> None:
    """Event counts published to the notification sink."""
    with st.expander("Published events", expanded=False):
        events = pd.DataFrame([e.to_dict() for e in sim.sink.unique_events()])
        if events.empty:
            st.info("No events.")
            return
        st.dataframe(
            events.groupby(["eventType", "newStatus"]).size().reset_index(name="count"),
            use_container_width=True, hide_index=True,
        )


def render_explainer() -> None:
    """Render the consolidation explainer section."""
    with st.expander("How Consolidation Works", expanded=False):
        col1, col2 = st.columns(2)
        with col1:
            st.markdown("""
            ### Merging
            A new order is matched against recent orders from the same or a
            nearby restaurant whose delivery addresses are close together.
            Matches form a group that stays open for the formation window
            or until it reaches K orders.
            """)
        with col2:
            st.markdown("""
            ### Assignment
            A finalized group is offered to the nearest idle partner.
            Rejections and timeouts move on to the next partner; when the
            retry budget runs out the group is disbanded and its orders are
            dispatched one by one.
            """)
        st.markdown("---")
        st.markdown("**Key Metric: Trips Saved** = orders delivered - delivery runs")


# =============================================================================
# MAIN APPLICATION
# =============================================================================

def main():
    """Main application entry point."""
    st.markdown("""
    <div style="text-align: center; padding: 1rem 0 2rem 0;">
        <h1 style="font-size: 3rem; font-weight: 800; margin-bottom: 0.5rem;">MergeEats Dispatch</h1>
        <p style="font-size: 1.2rem; color: #666; max-width: 700px; margin: 0 auto;">
            Order Consolidation vs. One-Order-Per-Run Baseline
        </p>
    </div>
    """, unsafe_allow_html=True)

    params = render_sidebar()
    if params is None:
        st.markdown("---")
        st.info("👈 Pick a scenario and parameters in the sidebar, then click **Run Simulation**.")
        render_explainer()
        return

    scenario, settings, accept_probability, seed = params
    st.markdown("---")

    if "simulations" in st.session_state:
        simulations = st.session_state["simulations"]
    else:
        simulations: Dict[str, Simulation] = {}
        with st.spinner("Running simulations... This may take a moment."):
            progress_bar = st.progress(0)
            for i, mode in enumerate(("baseline", "consolidation")):
                progress_bar.progress((i + 1) / 2, text=f"Running {mode}...")
                mode_settings = replace(settings, consolidation_enabled=(mode == "consolidation"))
                simulations[mode] = run_mode(scenario, mode_settings, accept_probability, seed)
            progress_bar.empty()
        st.session_state["simulations"] = simulations
    st.success("Simulation complete!")

    all_results = {mode: sim.get_results() for mode, sim in simulations.items()}
    render_kpi_row(all_results["baseline"], all_results["consolidation"])

    st.markdown('<div class="section-header">🗺️ Groups on the Map</div>', unsafe_allow_html=True)
    render_group_map(simulations["consolidation"])

    render_comparison_table(all_results)
    render_group_table(simulations["consolidation"])
    render_event_table(simulations["consolidation"])
    render_explainer()

    st.markdown("---")
    st.markdown("""
    <div style="text-align: center; color: #888; padding: 1rem;">
        MergeEats Dispatch | Consolidation Engine
    </div>
    """, unsafe_allow_html=True)


if __name__ == "__main__":
    main()
