"""Streamlit dashboard for the Language Progress Tracker."""
import os
from datetime import datetime, timezone

import streamlit as st
import pandas as pd
import requests
import plotly.express as px
import plotly.graph_objects as go

DAY_MS = 24 * 60 * 60 * 1000


# Configuration: prioritize Streamlit secrets, then env var, then localhost fallback
def get_backend_url():
    """Get backend URL from secrets, env var, or fallback to localhost."""
    try:
        if hasattr(st, "secrets") and "BACKEND_URL" in st.secrets:
            return st.secrets["BACKEND_URL"].rstrip("/")
    except Exception:
        pass
    env_url = os.getenv("BACKEND_URL")
    if env_url:
        return env_url.rstrip("/")
    return "http://127.0.0.1:8000"

API_BASE_URL = get_backend_url()

st.set_page_config(
    page_title="Language Progress",
    page_icon="🈶",
    layout="wide",
)

st.title("🈶 Language Progress Dashboard")


def check_backend_health():
    """Check if backend is running (longer timeout for cloud cold starts)."""
    try:
        response = requests.get(f"{API_BASE_URL}/health", timeout=10)
        return response.status_code == 200 and response.json().get("status") == "ok"
    except requests.exceptions.RequestException:
        return False


def get_json(path: str, params: dict = None):
    """GET a read endpoint.  Returns None on 404/409, {"error": ...} otherwise."""
    try:
        response = requests.get(f"{API_BASE_URL}{path}", params=params, timeout=5)
        if response.status_code == 200:
            return response.json()
        if response.status_code in (404, 409):
            return None
        return {"error": f"HTTP {response.status_code}"}
    except requests.exceptions.RequestException as e:
        return {"error": str(e)}


def log_manual_activity(user_id: str, title: str, minutes: int):
    """Report self-tracked study time.  Returns (success, message)."""
    try:
        response = requests.post(
            f"{API_BASE_URL}/users/{user_id}/activities",
            json={"title": title or None, "duration_ms": minutes * 60 * 1000},
            timeout=5,
        )
    except requests.exceptions.RequestException as e:
        return False, str(e)
    if response.status_code != 200:
        return False, f"Failed to log activity: {response.text}"
    body = response.json()
    return True, f"Logged {minutes} min (+{body['xp_awarded']} XP, streak {body['current_streak']})"


def ms_to_datetime(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def heatmap_figure(heatmap: dict):
    """Calendar heatmap: one column per week, one row per weekday."""
    start = ms_to_datetime(heatmap["start_day"])
    df = pd.DataFrame({
        "date": [start + pd.Timedelta(days=i) for i in range(heatmap["total_days"])],
        "intensity": heatmap["values"],
        "minutes": heatmap["minutes"],
        "vacation": heatmap["vacation_flags"],
    })
    df["weekday"] = df["date"].dt.weekday
    df["week"] = (df["date"] - pd.to_timedelta(df["weekday"], unit="D")).dt.strftime("%Y-%m-%d")
    df["label"] = df.apply(
        lambda r: f"{r['date']:%Y-%m-%d}: {r['minutes']} min" + (" (vacation)" if r["vacation"] else ""),
        axis=1,
    )

    z = df.pivot(index="weekday", columns="week", values="intensity")
    text = df.pivot(index="weekday", columns="week", values="label")
    fig = go.Figure(go.Heatmap(
        z=z.values,
        x=list(z.columns),
        y=["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"],
        text=text.values,
        hoverinfo="text",
        zmin=0,
        zmax=4,
        colorscale=["#ebedf0", "#fde0c5", "#facba6", "#f59e6c", "#e4572e"],
        showscale=False,
        xgap=2,
        ygap=2,
    ))
    fig.update_yaxes(autorange="reversed")
    fig.update_layout(height=240, margin=dict(l=10, r=10, t=10, b=10))
    return fig


# Sidebar
st.sidebar.header("Controls")

backend_ok = check_backend_health()
if backend_ok:
    st.sidebar.markdown("**Backend:** :green_circle: Connected")
else:
    st.sidebar.markdown("**Backend:** :red_circle: Unreachable")
    st.warning("Backend unreachable (may be waking up or misconfigured). Refresh the page to retry.")
st.sidebar.caption(f"`{API_BASE_URL}`")

# Get user_id from URL query param if present
url_user_id = st.query_params.get("user_id", None)

st.sidebar.subheader("Learner")
user_id = st.sidebar.text_input("User ID", value=url_user_id or "", help="External user id")
heatmap_days = st.sidebar.select_slider("Heatmap window (days)", options=[30, 90, 180, 365], value=180)
xp_range = st.sidebar.radio("XP range", options=["7d", "30d", "all"], horizontal=True)

if st.sidebar.button("Load Progress") and user_id:
    st.session_state["user_id"] = user_id
elif url_user_id and "user_id" not in st.session_state:
    st.session_state["user_id"] = url_user_id

# Main content
if "user_id" in st.session_state:
    user_id = st.session_state["user_id"]
    streak = get_json(f"/users/{user_id}/streak")

    if streak is None:
        st.error(f"User `{user_id}` not found.")
    elif "error" in streak:
        st.error(f"Failed to fetch streak: {streak['error']}")
    else:
        progress = get_json(f"/users/{user_id}/progress")

        st.subheader(f"Progress for `{user_id}`")
        col1, col2, col3, col4 = st.columns(4)
        with col1:
            st.metric("Current Streak", f"{streak['current_streak']} days")
        with col2:
            st.metric("Longest Streak", f"{streak['longest_streak']} days")
        with col3:
            st.metric("Streak Bonus", f"x{streak['streak_multiplier']:.3f}")
        with col4:
            capped = " (max)" if streak["vacation_capped"] else ""
            st.metric("Vacation Credits", f"{streak['vacation_balance']}/{streak['vacation_cap']}{capped}")

        if not streak["vacation_capped"]:
            st.progress(
                streak["percent_to_next_vacation"] / 100,
                text=f"{streak['xp_towards_next_vacation']}/{streak['xp_per_vacation']} XP to next vacation credit",
            )

        if progress is None:
            st.info("No target language selected yet.")
        elif "error" not in progress:
            st.markdown(
                f"**{progress['language_code']}** · Level **{progress['level']}** · "
                f"{progress['total_experience']} XP · "
                f"{progress['total_duration_ms'] // 3_600_000} h studied"
            )
            st.progress(
                progress["percent_to_next_level"] / 100,
                text=f"{progress['experience_towards_next_level']}/{progress['next_level_cost']} XP to level {progress['level'] + 1}",
            )

        st.divider()

        st.subheader("Study Heatmap")
        heatmap = get_json(f"/users/{user_id}/heatmap", params={"days": heatmap_days})
        if heatmap and "error" not in heatmap:
            st.plotly_chart(heatmap_figure(heatmap), use_container_width=True)

        col_left, col_right = st.columns(2)

        with col_left:
            st.subheader("Experience Gained")
            series = get_json(f"/users/{user_id}/xp-timeseries", params={"range": xp_range})
            if series and "error" not in series:
                df_xp = pd.DataFrame(series["points"])
                df_xp["day"] = pd.to_datetime(df_xp["day_start"], unit="ms", utc=True)
                fig_xp = px.bar(df_xp, x="day", y="xp", title=f"{series['total_xp']} XP in {series['days']} days")
                fig_xp.update_layout(xaxis_title="Day", yaxis_title="XP")
                st.plotly_chart(fig_xp, use_container_width=True)

        with col_right:
            st.subheader("This Week by Source")
            weekly = get_json(f"/users/{user_id}/activities/weekly-sources")
            if weekly and not isinstance(weekly, dict):
                df_week = pd.DataFrame(weekly).melt(id_vars="day", var_name="source", value_name="minutes")
                fig_week = px.bar(df_week, x="day", y="minutes", color="source", title="Minutes per day")
                st.plotly_chart(fig_week, use_container_width=True)

        st.subheader("Recent Activities")
        activities = get_json(f"/users/{user_id}/activities", params={"limit": 50})
        if activities and not isinstance(activities, dict):
            df = pd.DataFrame(activities)
            df["started"] = pd.to_datetime(df["occurred_at"], unit="ms", utc=True)
            df["minutes"] = df["duration_ms"] // 60000
            st.dataframe(
                df[["started", "title", "source", "minutes", "language_code", "is_manually_tracked"]],
                use_container_width=True,
                hide_index=True,
            )
        else:
            st.info("No completed activities yet.")

        st.divider()
        st.subheader("Log Study Time")
        with st.form("manual_activity"):
            title = st.text_input("What did you study?")
            minutes = st.number_input("Minutes", min_value=1, max_value=600, value=30)
            submitted = st.form_submit_button("Log")
        if submitted:
            success, message = log_manual_activity(user_id, title, int(minutes))
            if success:
                st.success(message)
                st.rerun()
            else:
                st.error(message)
else:
    st.info("Enter a user ID in the sidebar and click 'Load Progress'.")

# Footer
st.sidebar.divider()
st.sidebar.caption("Language Progress Tracker v0.1.0")
