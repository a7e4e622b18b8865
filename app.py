"""
Snackzo - Operations Dashboard
==============================

Dashboard for watching live deliveries on campus.

Features:
- Runner table with online state and location staleness
- Folium map of runner positions, drop-offs and recorded trails
- Order table with enhanced ETA and the RPC estimate range
- Notification console that sends through the dispatcher
"""

from typing import Any, Dict, List, Optional

import folium
import pandas as pd
import streamlit as st
from streamlit_folium import st_folium

from snackzo import config, utils
from snackzo.backend import Backend, RestBackend, in_
from snackzo.eta import DeliveryEstimator, calculate_enhanced_eta, format_eta
from snackzo.location import RunnerLocationWatcher, order_location_trail, trail_distance_km
from snackzo.models import ETAFactors, NotificationPayload, OrderStatus
from snackzo.notifications import NotificationDispatcher
from snackzo.providers import ProviderError
from snackzo.seed import DEFAULT_DATA_DIR, load_demo_backend

# =============================================================================
# PAGE CONFIG
# =============================================================================

st.set_page_config(
    page_title="Snackzo Operations",
    page_icon="🛒",
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

    .kpi-card {
        background: linear-gradient(135deg, #a855f7 0%, #06b6d4 100%);
        border-radius: 16px;
        padding: 1.25rem;
        color: white;
        text-align: center;
        box-shadow: 0 10px 40px rgba(168, 85, 247, 0.3);
    }

    .kpi-value {
        font-size: 2.2rem;
        font-weight: 800;
        margin: 0.5rem 0;
    }

    .kpi-label {
        font-size: 0.9rem;
        opacity: 0.9;
        text-transform: uppercase;
        letter-spacing: 1px;
    }

    .section-header {
        font-size: 1.5rem;
        font-weight: 700;
        margin: 2rem 0 1rem 0;
        padding-bottom: 0.5rem;
        border-bottom: 3px solid #a855f7;
    }

    #MainMenu {visibility: hidden;}
    footer {visibility: hidden;}
</style>
""", unsafe_allow_html=True)

ACTIVE_STATUSES = [
    OrderStatus.PLACED.value,
    OrderStatus.PACKED.value,
    OrderStatus.OUT_FOR_DELIVERY.value,
]

RUNNER_COLORS = ["#a855f7", "#06b6d4", "#f97316", "#22c55e", "#ef4444", "#eab308"]

# Campus center used when nothing has coordinates yet
DEFAULT_CENTER = (12.9692, 79.1559)


# =============================================================================
# DATA LOADING
# =============================================================================

@st.cache_resource(show_spinner=False)
def get_backend(source: str, data_dir: str) -> Backend:
    """Demo backend (kept for the session so writes persist) or the hosted one."""
    if source == "remote":
        return RestBackend(config.SUPABASE_URL, config.SUPABASE_SERVICE_ROLE_KEY)
    return load_demo_backend(data_dir)


@st.cache_resource(show_spinner=False)
def get_dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher()


def runner_frame(backend: Backend) -> pd.DataFrame:
    rows = []
    for runner in backend.select("runners", order_by="name"):
        watcher = RunnerLocationWatcher(backend, runner["id"])
        position = watcher.fetch()
        age = watcher.seconds_since_update()
        rows.append({
            "Runner": runner.get("name"),
            "ID": runner["id"],
            "Online": bool(runner.get("is_online")),
            "Lat": position.lat if position else None,
            "Lng": position.lng if position else None,
            "Last Update": utils.to_iso(position.last_update) if position and position.last_update else "-",
            "Age": utils.format_time_duration(age / 60) if age is not None else "-",
            "Stale": watcher.is_stale(),
            "Prefers": runner.get("notification_preference") or "sms",
        })
    return pd.DataFrame(rows)


def order_frame(backend: Backend, orders: List[Dict[str, Any]]) -> pd.DataFrame:
    estimator = DeliveryEstimator(backend)
    rows = []
    for order in orders:
        eta = calculate_enhanced_eta(
            ETAFactors(
                runner_id=order.get("runner_id"),
                order_id=order["id"],
                is_express=bool(order.get("is_express")),
            ),
            backend,
        )
        estimate = estimator.estimate(order.get("runner_id"))
        low, high = estimator.estimate_range(estimate)
        rows.append({
            "Order": f"#{utils.short_order_id(order['id'])}",
            "Status": order.get("status"),
            "Runner": order.get("runner_id") or "-",
            "Express": bool(order.get("is_express")),
            "ETA": format_eta(eta.estimated_minutes),
            "ETA Confidence": eta.confidence.value,
            "Estimate": f"{low}-{high} min",
            "Estimate Basis": estimator.confidence_label(estimate.confidence),
        })
    return pd.DataFrame(rows)


# =============================================================================
# MAP
# =============================================================================

def create_live_map(backend: Backend, runners: pd.DataFrame, orders: List[Dict[str, Any]]) -> folium.Map:
    """
    Folium map with:
    - Runner positions (grey when stale)
    - Drop-off points of active orders
    - Recorded trail per active order
    """
    located = runners.dropna(subset=["Lat", "Lng"]) if not runners.empty else runners
    if not located.empty:
        center = (located["Lat"].mean(), located["Lng"].mean())
    else:
        center = DEFAULT_CENTER

    m = folium.Map(location=list(center), zoom_start=16, tiles='cartodbpositron')

    runner_group = folium.FeatureGroup(name="Runners")
    for i, runner in enumerate(located.itertuples()):
        color = "#9ca3af" if runner.Stale else RUNNER_COLORS[i % len(RUNNER_COLORS)]
        folium.CircleMarker(
            location=[runner.Lat, runner.Lng],
            radius=9,
            color=color,
            fill=True,
            fillColor=color,
            fillOpacity=0.9,
            popup=f"{runner.Runner} ({runner.Age} ago)",
        ).add_to(runner_group)
    runner_group.add_to(m)

    dropoff_group = folium.FeatureGroup(name="Drop-offs")
    trail_group = folium.FeatureGroup(name="Trails")
    for order in orders:
        if order.get("delivery_lat") is not None and order.get("delivery_lng") is not None:
            folium.Marker(
                location=[order["delivery_lat"], order["delivery_lng"]],
                popup=f"#{utils.short_order_id(order['id'])}: {order.get('delivery_address')}",
                icon=folium.Icon(color="purple", icon="home"),
            ).add_to(dropoff_group)

        trail = order_location_trail(backend, order["id"])
        if len(trail) >= 2:
            folium.PolyLine(
                locations=[fix.loc for fix in trail],
                weight=4,
                color='#a855f7',
                opacity=0.8,
                popup=f"#{utils.short_order_id(order['id'])}: {trail_distance_km(trail):.2f} km",
            ).add_to(trail_group)
    dropoff_group.add_to(m)
    trail_group.add_to(m)

    folium.LayerControl().add_to(m)
    return m


# =============================================================================
# SECTIONS
# =============================================================================

def apply_parameters(speed_kmh: float, stale_after_seconds: float) -> None:
    """Update config dynamically from the sidebar controls."""
    config.AVG_SPEED_KMH = float(speed_kmh)
    config.STALE_LOCATION_SECONDS = float(stale_after_seconds)


def render_sidebar() -> Optional[Backend]:
    """Render the sidebar and return the selected backend."""
    st.sidebar.markdown("## 🎛️ Data Source")
    options = ["demo"]
    if config.SUPABASE_URL and config.SUPABASE_SERVICE_ROLE_KEY:
        options.append("remote")
    source = st.sidebar.radio("Backend", options, format_func=lambda s: "Demo data" if s == "demo" else "Hosted database")
    data_dir = DEFAULT_DATA_DIR
    if source == "demo":
        data_dir = st.sidebar.text_input("Data directory", DEFAULT_DATA_DIR)

    st.sidebar.markdown("---")
    st.sidebar.markdown("### ⚙️ Parameters")

    speed = st.sidebar.slider(
        "Runner Speed (km/h)",
        min_value=5,
        max_value=40,
        value=int(config.AVG_SPEED_KMH),
        step=1,
        help="Average runner speed on campus"
    )

    stale_after = st.sidebar.slider(
        "Stale Location (seconds)",
        min_value=30,
        max_value=600,
        value=int(config.STALE_LOCATION_SECONDS),
        step=30,
        help="Positions older than this are flagged as stale"
    )

    apply_parameters(speed, stale_after)

    if st.sidebar.button("🔄 Refresh", use_container_width=True):
        st.rerun()

    try:
        return get_backend(source, data_dir)
    except (OSError, ValueError) as e:
        st.sidebar.error(f"Failed to load data: {e}")
        return None


def render_kpi_row(runners: pd.DataFrame, orders: List[Dict[str, Any]], dispatcher: NotificationDispatcher) -> None:
    online = int(runners["Online"].sum()) if not runners.empty else 0
    out = sum(1 for o in orders if o.get("status") == OrderStatus.OUT_FOR_DELIVERY.value)
    sent = sum(1 for r in dispatcher.history if r.success)

    cards = [
        ("Runners Online", online),
        ("Active Orders", len(orders)),
        ("Out for Delivery", out),
        ("Notifications Sent", sent),
    ]
    for col, (label, value) in zip(st.columns(len(cards)), cards):
        with col:
            st.markdown(f"""
            <div class="kpi-card">
                <div class="kpi-label">{label}</div>
                <div class="kpi-value">{value}</div>
            </div>
            """, unsafe_allow_html=True)


def render_notification_console(dispatcher: NotificationDispatcher) -> None:
    st.markdown('<div class="section-header">📣 Notification Console</div>', unsafe_allow_html=True)

    with st.form("notify"):
        channel = st.selectbox("Channel", ["sms", "whatsapp", "email"])
        to = st.text_input("To (phone or e-mail)")
        subject = st.text_input("Subject (e-mail only)")
        message = st.text_area("Message")
        submitted = st.form_submit_button("Send")

    if submitted:
        payload = NotificationPayload(
            to=to,
            subject=subject or None,
            message=message,
            html=f"<p>{message}</p>" if channel == "email" else None,
        )
        try:
            result = dispatcher.dispatch(channel, payload)
        except (ValueError, ProviderError) as e:
            st.error(str(e))
        else:
            if result.success:
                st.success(f"Sent via {result.provider}")
            else:
                st.error(f"{result.provider}: {result.error}")

    if dispatcher.history:
        history = pd.DataFrame([
            {
                "Sent": f"{r.sent_at:%H:%M:%S}",
                "Channel": r.channel,
                "To": r.to,
                "Provider": r.provider,
                "OK": r.success,
                "Error": r.error or "",
            }
            for r in reversed(dispatcher.history)
        ])
        st.dataframe(history, use_container_width=True, hide_index=True)


def main():
    """Main application entry point."""
    st.markdown("""
    <div style="text-align: center; padding: 1rem 0 2rem 0;">
        <h1 style="font-size: 3rem; font-weight: 800; margin-bottom: 0.5rem;">🛒 Snackzo Operations</h1>
        <p style="font-size: 1.2rem; color: #666;">Live runners, delivery estimates and notifications</p>
    </div>
    """, unsafe_allow_html=True)

    backend = render_sidebar()
    if backend is None:
        return
    dispatcher = get_dispatcher()

    runners = runner_frame(backend)
    orders = backend.select("orders", [in_("status", ACTIVE_STATUSES)], order_by="created_at")

    render_kpi_row(runners, orders, dispatcher)

    st.markdown('<div class="section-header">🗺️ Live Map</div>', unsafe_allow_html=True)
    st_folium(create_live_map(backend, runners, orders), width=None, height=500, use_container_width=True)

    st.markdown('<div class="section-header">🛵 Runners</div>', unsafe_allow_html=True)
    if runners.empty:
        st.info("No runners yet.")
    else:
        st.dataframe(runners, use_container_width=True, hide_index=True)

    st.markdown('<div class="section-header">📦 Active Orders</div>', unsafe_allow_html=True)
    if orders:
        st.dataframe(order_frame(backend, orders), use_container_width=True, hide_index=True)
    else:
        st.info("No active orders.")

    render_notification_console(dispatcher)

    st.markdown("---")
    st.markdown("""
    <div style="text-align: center; color: #888; padding: 1rem;">
        Snackzo | Late night cravings? We've got you covered! 🌙
    </div>
    """, unsafe_allow_html=True)


if __name__ == "__main__":
    main()
