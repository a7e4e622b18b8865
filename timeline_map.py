"""Streamlit map: step-by-step replay of an order's recorded runner trail.

Run:
    streamlit run timeline_map.py

Pick an order with location history and scrub through the fixes; each step
shows the distance covered so far and the ETA from that position.
"""

from __future__ import annotations

from typing import Dict, List

import pydeck as pdk
import streamlit as st

from snackzo import utils
from snackzo.backend import eq
from snackzo.eta import calculate_enhanced_eta, format_eta
from snackzo.location import order_location_trail
from snackzo.models import ETAFactors, LocationFix
from snackzo.seed import load_demo_backend


@st.cache_resource(show_spinner=False)
def get_backend():
    return load_demo_backend()


# -----------------------------------------------------------------------------
# Trace
# -----------------------------------------------------------------------------

def build_steps(order: Dict, trail: List[LocationFix]) -> List[Dict]:
    """One entry per fix: position, distance so far, distance left and ETA."""
    backend = get_backend()
    destination = None
    if order.get("delivery_lat") is not None and order.get("delivery_lng") is not None:
        destination = (float(order["delivery_lat"]), float(order["delivery_lng"]))

    steps: List[Dict] = []
    covered = 0.0
    for i, fix in enumerate(trail):
        if i > 0:
            prev = trail[i - 1]
            covered += utils.haversine_distance(prev.lat, prev.lng, fix.lat, fix.lng)

        remaining = None
        eta_minutes = None
        if destination is not None:
            remaining = utils.haversine_distance(fix.lat, fix.lng, *destination)
            eta = calculate_enhanced_eta(
                ETAFactors(
                    runner_id=order.get("runner_id"),
                    order_id=order["id"],
                    is_express=bool(order.get("is_express")),
                    distance_km=remaining,
                ),
                backend,
                now=fix.timestamp,
            )
            eta_minutes = eta.estimated_minutes

        steps.append(
            {
                "time": fix.timestamp.strftime("%H:%M:%S"),
                "lat": fix.lat,
                "lng": fix.lng,
                "accuracy": fix.accuracy_m,
                "covered_km": covered,
                "remaining_km": remaining,
                "eta_minutes": eta_minutes,
            }
        )
    return steps


# -----------------------------------------------------------------------------
# Map helpers
# -----------------------------------------------------------------------------

def trail_layer(steps: List[Dict]) -> pdk.Layer:
    return pdk.Layer(
        "PathLayer",
        [{"path": [[s["lng"], s["lat"]] for s in steps], "label": "trail"}],
        get_path="path",
        get_color=[168, 85, 247],
        width_min_pixels=4,
    )


def runner_layer(step: Dict) -> pdk.Layer:
    return pdk.Layer(
        "ScatterplotLayer",
        [{"position": [step["lng"], step["lat"]], "label": f"Runner @ {step['time']}"}],
        get_position="position",
        get_fill_color=[6, 182, 212],
        get_radius=12,
        pickable=True,
        stroked=True,
        filled=True,
        line_width_min_pixels=1,
    )


def dropoff_layer(order: Dict) -> pdk.Layer:
    return pdk.Layer(
        "ScatterplotLayer",
        [{
            "position": [float(order["delivery_lng"]), float(order["delivery_lat"])],
            "label": order.get("delivery_address") or "Drop-off",
        }],
        get_position="position",
        get_fill_color=[249, 115, 22],
        get_radius=14,
        opacity=0.7,
        pickable=True,
    )


# -----------------------------------------------------------------------------
# UI
# -----------------------------------------------------------------------------

st.set_page_config(page_title="Delivery Trail Replay", page_icon="🗺️", layout="wide")
st.title("🗺️ Delivery Trail Replay")
st.write("Scrub through a runner's recorded positions for one order.")

backend = get_backend()
orders = {
    o["id"]: o for o in backend.select("orders")
    if backend.count("order_location_history", [eq("order_id", o["id"])]) > 0
}
if not orders:
    st.error("No orders with location history.")
    st.stop()

order_id = st.selectbox("Order", list(orders), format_func=lambda oid: f"#{utils.short_order_id(oid)}")
order = orders[order_id]
trail = order_location_trail(backend, order_id)
steps = build_steps(order, trail)

idx = st.slider("Fix", 0, len(steps) - 1, len(steps) - 1) if len(steps) > 1 else 0
current = steps[idx]

col1, col2, col3 = st.columns(3)
col1.metric("Time", current["time"])
col2.metric("Covered", f"{current['covered_km']:.2f} km")
if current["eta_minutes"] is not None:
    col3.metric("ETA from here", format_eta(current["eta_minutes"]), f"{current['remaining_km']:.2f} km left", delta_color="off")
else:
    col3.metric("ETA from here", "—")

layers = [trail_layer(steps[: idx + 1]), runner_layer(current)]
if order.get("delivery_lat") is not None and order.get("delivery_lng") is not None:
    layers.append(dropoff_layer(order))

view_state = pdk.ViewState(latitude=current["lat"], longitude=current["lng"], zoom=16)
st.pydeck_chart(pdk.Deck(layers=layers, initial_view_state=view_state, tooltip={"text": "{label}"}))

st.markdown("---")
st.markdown("#### Fix Table")
rows = [
    {
        "time": s["time"],
        "lat": f"{s['lat']:.5f}",
        "lng": f"{s['lng']:.5f}",
        "accuracy (m)": s["accuracy"] if s["accuracy"] is not None else "—",
        "covered (km)": f"{s['covered_km']:.2f}",
        "eta": format_eta(s["eta_minutes"]) if s["eta_minutes"] is not None else "—",
    }
    for s in steps
]
st.dataframe(rows, use_container_width=True, hide_index=True)
