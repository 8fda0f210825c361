"""
The Counter - Admin Dashboard
=============================
Streamlit dashboard for the print desk.

Features:
- Pickup lookup by redemption code, with document downloads
- Order counts and today's online revenue
- Pending / paid order list
- Event log viewer (order_events)

Run: streamlit run admin/dashboard.py
"""

import asyncio
import os
import sys
from typing import Any, Dict, List, Optional

import pandas as pd
import streamlit as st

# Add backend to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "backend"))

from config import config
from database import Database, get_order_counts, get_order_events, get_revenue_today
from orders.errors import StorageFailure
from orders.models import Order, OrderStatus
from storage import FilePlacementManager
from storage.postgres_store import PostgresOrderStore


# =============================================================================
# PAGE CONFIG
# =============================================================================

st.set_page_config(
    page_title="PrintDesk - The Counter",
    page_icon="🖨️",
    layout="wide",
    initial_sidebar_state="expanded",
)

store = PostgresOrderStore()
files = FilePlacementManager(config.UPLOAD_ROOT)


# =============================================================================
# ASYNC HELPERS
# =============================================================================

def run_async(coro):
    """Run async function in sync context for Streamlit."""
    try:
        loop = asyncio.get_event_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
    return loop.run_until_complete(coro)


# =============================================================================
# DATA FETCHING
# =============================================================================

@st.cache_data(ttl=30)
def fetch_summary() -> Dict[str, Any]:
    """Order counts and revenue with 30s cache."""
    try:
        counts = run_async(get_order_counts())
        revenue = run_async(get_revenue_today())
    except Exception as e:
        return {"error": str(e)}
    return {"counts": counts, "revenue_today": revenue}


@st.cache_data(ttl=10)
def fetch_orders(status: Optional[str], limit: int) -> Dict[str, Any]:
    """Recent orders with 10s cache."""
    try:
        orders = run_async(store.list_orders(
            status=OrderStatus(status) if status else None,
            limit=limit,
        ))
    except StorageFailure as e:
        return {"error": str(e)}
    return {"orders": [o.model_dump(mode="json") for o in orders]}


def fetch_order(code: str) -> Optional[Order]:
    return run_async(store.find_by_identifier(code))


def fetch_recent_events(limit: int, entity_id: Optional[str]) -> List[Dict]:
    return run_async(get_order_events(entity_id=entity_id or None, limit=limit))


# =============================================================================
# SIDEBAR
# =============================================================================

def render_sidebar():
    """Render sidebar with navigation and quick stats."""
    st.sidebar.title("🖨️ The Counter")
    st.sidebar.markdown("---")

    page = st.sidebar.radio(
        "Navigation",
        ["🔎 Pickup Lookup", "📦 Orders", "📜 Event Log"],
        label_visibility="collapsed"
    )

    st.sidebar.markdown("---")
    st.sidebar.subheader("Quick Stats")

    summary = fetch_summary()
    if "error" in summary:
        st.sidebar.error(f"Stats unavailable: {summary['error']}")
    else:
        counts = summary["counts"]
        st.sidebar.metric("⏳ Awaiting payment", counts.get(OrderStatus.PENDING.value, 0))
        st.sidebar.metric("✅ Paid / ready", counts.get(OrderStatus.PAID.value, 0))
        st.sidebar.metric("💰 Online revenue today", f"₹{summary['revenue_today']:,.2f}")

    st.sidebar.markdown("---")

    if st.sidebar.button("🔄 Refresh Data"):
        st.cache_data.clear()
        st.rerun()

    return page


# =============================================================================
# PICKUP LOOKUP
# =============================================================================

def render_lookup():
    """Counter view: customer reads out a code, staff fetches the job."""
    st.title("🔎 Pickup Lookup")

    code = st.text_input("Redemption code", max_chars=64, placeholder="e.g. 482913").strip()
    if not code:
        st.info("Enter the code the customer received")
        return

    try:
        order = fetch_order(code)
    except StorageFailure as e:
        st.error(f"Lookup failed: {e}")
        return

    if order is None:
        st.warning(f"No order under {code}")
        return

    col1, col2, col3, col4 = st.columns(4)
    with col1:
        st.metric("Status", order.status.value.title())
    with col2:
        st.metric("Price", f"₹{order.price:,.2f}")
    with col3:
        st.metric("Payment", "Online" if order.pay_method.value == "prepaid" else "At counter")
    with col4:
        st.metric("Copies", order.options.copies)

    if order.pay_method.value == "prepaid" and not order.is_paid:
        st.error("Online payment not confirmed yet; collect payment or ask the customer to verify")

    st.subheader("Print options")
    st.json(order.options.model_dump(mode="json"))

    st.subheader("Documents")
    for stored in order.file_paths:
        name = os.path.basename(stored)
        path = files.resolve(order.key, name)
        col1, col2 = st.columns([3, 1])
        with col1:
            st.write(name)
        with col2:
            if path is None:
                st.write("missing")
            else:
                st.download_button("Download", data=path.read_bytes(), file_name=name, key=f"dl-{name}")


# =============================================================================
# ORDERS
# =============================================================================

def render_orders():
    """Render the order list page."""
    st.title("📦 Orders")

    col1, col2 = st.columns(2)
    with col1:
        status_filter = st.selectbox("Status", ["All", "pending", "paid"])
    with col2:
        limit = st.slider("Show last", 10, 500, 100)

    result = fetch_orders(None if status_filter == "All" else status_filter, limit)
    if "error" in result:
        st.error(f"Error fetching orders: {result['error']}")
        return

    orders = result["orders"]
    if not orders:
        st.info("No orders yet")
        return

    df = pd.DataFrame(orders)
    df["files"] = df["file_paths"].apply(len)
    df["copies"] = df["options"].apply(lambda o: o.get("copies", 1))
    df["color"] = df["options"].apply(lambda o: o.get("color_mode", "bw"))
    df["price"] = df["price"].apply(lambda x: f"₹{x:,.2f}")
    df["created_at"] = pd.to_datetime(df["created_at"]).dt.strftime("%Y-%m-%d %H:%M")

    def highlight_pending(row):
        if row["status"] == "pending":
            return ["background-color: #5f4a1e"] * len(row)
        return [""] * len(row)

    display_cols = ["key", "status", "pay_method", "price", "files", "copies", "color", "created_at"]
    st.dataframe(
        df[display_cols].style.apply(highlight_pending, axis=1),
        use_container_width=True,
        hide_index=True
    )


# =============================================================================
# EVENT LOG
# =============================================================================

def render_event_log():
    """Render the event log page."""
    st.title("📜 Event Log")
    st.markdown("Order events from the Black Box")

    col1, col2 = st.columns(2)
    with col1:
        entity_filter = st.text_input("Order identifier", placeholder="code or tracking id").strip()
    with col2:
        limit = st.slider("Show last", 10, 200, 50)

    try:
        events = fetch_recent_events(limit, entity_filter)
    except Exception as e:
        st.error(f"Error fetching events: {e}")
        return

    if not events:
        st.info("No events found")
        return

    for event in events:
        timestamp = event.get("timestamp")
        time_str = timestamp.strftime("%Y-%m-%d %H:%M:%S") if timestamp else "Unknown"

        with st.container():
            col1, col2, col3, col4 = st.columns([1, 2, 2, 1])
            with col1:
                st.write(time_str)
            with col2:
                st.write(f"**{event.get('event_type', 'UNKNOWN')}**")
            with col3:
                st.write(f"Order: {event.get('entity_id', '-')}")
            with col4:
                st.write(event.get("actor", "-"))

            payload = event.get("payload", {})
            if payload:
                with st.expander("View Payload"):
                    st.json(payload)

            st.markdown("---")


# =============================================================================
# MAIN
# =============================================================================

def main():
    """Main dashboard entry point."""
    try:
        run_async(Database.initialize())
    except Exception as e:
        st.error(f"Database connection failed: {e}")
        st.info("Make sure PostgreSQL is running and DATABASE_URL is set")
        return

    page = render_sidebar()

    if page == "🔎 Pickup Lookup":
        render_lookup()
    elif page == "📦 Orders":
        render_orders()
    elif page == "📜 Event Log":
        render_event_log()


if __name__ == "__main__":
    main()
