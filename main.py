import time
from typing import Optional
import numpy as np
import networkx as nx
import pandas as pd
import streamlit as st
import matplotlib.pyplot as plt
from config import Limits, TICK_INTERVAL
from core import Logger
from simulation import Simulation

# ----------------------------- Helpers for UI -----------------------------
st.set_page_config(page_title="Thread & Lock Simulator", layout="wide")

def get_logger() -> Logger:
    if "shared_logger" not in st.session_state:
        st.session_state.shared_logger = Logger(max_buffer_size=20_000)
    return st.session_state.shared_logger

def get_sim() -> Simulation:
    if "sim" not in st.session_state:
        st.session_state.sim = Simulation(limits=Limits(), logger=get_logger())
    return st.session_state.sim

def draw_allocation(sim: Simulation, ax):
    with sim.cv:
        g = sim.locks.build_rag(sim.registry)
    n = max(len(g), 1)
    pos = nx.spring_layout(g, k=6.0 / np.sqrt(n), iterations=100, seed=3)

    locks = [v for v, d in g.nodes(data=True) if d.get("kind") == "lock"]
    threads = [v for v, d in g.nodes(data=True) if d.get("kind") == "thread"]
    colors = {"idle": "#9ca3af", "running": "#facc15", "error": "#ef4444"}
    nx.draw_networkx_nodes(g, pos, nodelist=locks, ax=ax, node_shape="s", node_size=1400, node_color="#60a5fa")
    nx.draw_networkx_nodes(g, pos, nodelist=threads, ax=ax, node_size=1000,
                           node_color=[colors[g.nodes[t]["status"]] for t in threads])
    nx.draw_networkx_labels(
        g, pos, ax=ax, font_size=9,
        bbox=dict(boxstyle="round,pad=0.25", fc="white", ec="none", alpha=0.7)
    )
    nx.draw_networkx_edges(g, pos, ax=ax, arrows=True, width=1.2, arrowsize=18,
                           connectionstyle="arc3,rad=0.18")
    ax.set_title("Lock Allocation")
    ax.axis("off")
    ax.margins(0.20)

def last_events(logger: Logger, limit: Optional[int] = None):
    rows = [rec.as_dict() for rec in logger.events()]
    if limit:
        rows = rows[-limit:]
    return rows

# ----------------------------- Sidebar Controls ---------------------------
st.sidebar.header("Controls")
sim = get_sim()

colA, colB = st.sidebar.columns(2)
with colA:
    if st.button("Start clock", use_container_width=True):
        sim.start_clock(TICK_INTERVAL)
with colB:
    if st.button("Stop clock", use_container_width=True):
        sim.stop_clock()

max_threads = st.sidebar.slider("Max threads", 1, 16, sim.limits.max_threads, 1)
max_memory = st.sidebar.slider("Max memory (CU)", 16, 512, int(sim.limits.max_memory), 16)
buff = st.sidebar.slider("Layer buff", 0.0, 3.0, float(sim.limits.layer_buff_multiplier), 0.1)
if (max_threads, max_memory, buff) != (sim.limits.max_threads, sim.limits.max_memory,
                                       sim.limits.layer_buff_multiplier):
    sim.update_limits(max_threads=max_threads, max_memory=float(max_memory), layer_buff_multiplier=buff)

if st.sidebar.checkbox("Pause log", value=not get_logger().enabled):
    get_logger().pause()
else:
    get_logger().resume()

c1, c2 = st.sidebar.columns(2)
with c1:
    if st.button("New thread", use_container_width=True):
        if sim.create_thread() is None:
            st.sidebar.warning("Thread or memory limit reached.")
with c2:
    if st.button("Run all idle", use_container_width=True):
        sim.run_all_idle()

if st.sidebar.button("Reset simulation", use_container_width=True):
    sim.stop_clock()
    st.session_state.shared_logger = Logger(max_buffer_size=20_000)
    st.session_state.sim = Simulation(limits=sim.limits, logger=st.session_state.shared_logger)
    sim = st.session_state.sim

st.sidebar.markdown("---")
if sim.deadlock_detected:
    st.sidebar.error("Deadlock detected!")
    info = sim.monitor.last_info or {}
    for d in info.get("details", []):
        st.sidebar.markdown(f"- **T{d['thread']}** holds {d['holds'] or 'nothing'}, still wants {d['missing']}")
    if st.sidebar.button("Resolve deadlock", use_container_width=True, type="primary"):
        sim.resolve_deadlock()
        st.session_state.last_resolved = time.time()
elif st.session_state.get("last_resolved"):
    st.sidebar.success("Deadlock resolved")
    if time.time() - st.session_state.last_resolved > 5:
        st.session_state.last_resolved = None

# ----------------------------- Overview + Threads Tabs --------------------
overview_tab, threads_tab = st.tabs(["Overview", "Threads"])

with overview_tab:
    m = sim.metrics()
    top1, top2, top3, top4 = st.columns(4)
    top1.metric("Runs OK / Failed", f"{m['runs_completed']} / {m['runs_failed']}")
    top2.metric("Races", f"{m['races']}")
    top3.metric("Deadlocks", f"{m['deadlocks_total']} ({m['deadlocks_resolved']} resolved)")
    top4.metric("Memory (CU)", f"{m['total_cost']:.1f} / {m['max_memory']:.0f}")

    left, right = st.columns([2, 1])
    with left:
        fig, ax = plt.subplots(figsize=(9, 6.5))
        draw_allocation(sim, ax)
        st.pyplot(fig, clear_figure=True)
    with right:
        st.subheader("Locks")
        st.dataframe([{"Lock": k, "Holder": v} for k, v in sim.locks_snapshot().items()],
                     use_container_width=True)
        st.subheader("System Log")
        rows = last_events(get_logger(), limit=200)
        st.dataframe(rows, use_container_width=True, height=320)
        full_df = pd.DataFrame(last_events(get_logger()))
        st.download_button(
            "Download as CSV",
            data=full_df.to_csv(index=False).encode(),
            file_name="logs.csv",
            mime="text/csv",
            use_container_width=True
        )

with threads_tab:
    for t in sim.threads_snapshot():
        tid = t["id"]
        with st.expander(f"Thread {tid} [{t['status'].upper()}] cost {t['cost']} CU", expanded=True):
            code = st.text_area("Code", t["payload"], key=f"code-{tid}", disabled=t["status"] == "running")
            if code != t["payload"]:
                sim.update_payload(tid, code)
            st.code(t["output"])
            lock_cols = st.columns(len(sim.locks.lock_names))
            for col, name in zip(lock_cols, sim.locks.lock_names):
                label = f"{'Release' if name in t['locks'] else 'Acquire'} {name}"
                if col.button(label, key=f"lock-{tid}-{name}", disabled=t["status"] == "running"):
                    sim.toggle_lock(tid, name)
            b1, b2, b3 = st.columns(3)
            if b1.button("Run", key=f"run-{tid}", disabled=t["status"] != "idle"):
                sim.start_thread(tid)
            if b2.button("Reset", key=f"reset-{tid}", disabled=t["status"] != "error"):
                sim.reset_thread(tid)
            if b3.button("Remove", key=f"rm-{tid}", disabled=t["status"] == "running"):
                sim.remove_thread(tid)

# Main-loop tick
if sim.ticker is not None:
    time.sleep(1.0)
    st.rerun()
