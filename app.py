"""
TallyIQ – Stock, Receivables & Order Intelligence
Streamlit review dashboard over Tally JSON exports (masters + vouchers).
"""

import json
import logging

import streamlit as st

from tallyiq.financial import aging_summary, cash_and_bank_balance, outstanding_invoices
from tallyiq.importer import build_dataset, read_document
from tallyiq.inventory import build_voucher_index, item_turnover_indexed, monthly_buckets_indexed
from tallyiq.prediction import (
    accuracy_log_entry, run_feedback_cycle, snapshot_from_dict, snapshot_to_dict,
)
from tallyiq.reports import (
    accuracy_table, movement_table, outstanding_table, predictions_table,
    reconciliation_table, stock_table, turnover_table, warnings_table,
)

logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
logger = logging.getLogger(__name__)


# ── Page Config ───────────────────────────────────────────────
st.set_page_config(
    page_title="TallyIQ",
    page_icon="🏭",
    layout="wide",
    initial_sidebar_state="expanded",
)

# ── CSS ───────────────────────────────────────────────────────
try:
    with open("style.css") as f:
        st.markdown(f"<style>{f.read()}</style>", unsafe_allow_html=True)
except FileNotFoundError:
    pass

# ── Session State ─────────────────────────────────────────────
_keys = ["dataset", "report", "snapshot", "accuracy", "accuracy_log", "read_warnings"]
for k in _keys:
    if k not in st.session_state:
        st.session_state[k] = None
if st.session_state.accuracy_log is None:
    st.session_state.accuracy_log = {}


def _read_upload(upload):
    if upload is None:
        return None, []
    return read_document(upload.getvalue(), upload.name)


# ── Sidebar ───────────────────────────────────────────────────
with st.sidebar:
    st.markdown("## 🏭 Tally Data Import")
    st.markdown("---")

    st.markdown("### 📒 Masters")
    st.caption("Stock items, ledgers and company (JSON export)")
    masters_file = st.file_uploader("Upload Masters JSON", type=["json", "txt"], key="masters_up")

    st.markdown("### 🧾 Transactions")
    st.caption("Day book / vouchers (JSON export)")
    tx_file = st.file_uploader("Upload Transactions JSON", type=["json", "txt"], key="tx_up")

    st.markdown("### 🔮 Previous Predictions")
    st.caption("(Optional) snapshot downloaded after the last import, to score it")
    snap_file = st.file_uploader("Upload Prediction Snapshot", type=["json"], key="snap_up")

    st.markdown("---")
    merge = st.checkbox("Merge with data already loaded", value=True)
    run_btn = st.button("▶ Import & Run Insights", use_container_width=True)

    if run_btn:
        with st.spinner("Importing..."):
            masters_doc, m_warn = _read_upload(masters_file)
            tx_doc, t_warn = _read_upload(tx_file)
            read_warnings = m_warn + t_warn
            fatal = [w for w in read_warnings if w.severity.value == 'fatal']
            for w in fatal:
                st.error(f"{w.context}: {w.message}")

            if masters_doc is None and tx_doc is None:
                st.warning("⚠ Nothing to import.")
            else:
                existing = st.session_state.dataset if merge else None
                sources = [f.name for f in (masters_file, tx_file) if f is not None]
                outcome = build_dataset(masters_doc, tx_doc, sources, existing=existing)

                previous = st.session_state.snapshot
                if snap_file is not None:
                    try:
                        previous = snapshot_from_dict(json.loads(snap_file.getvalue()))
                    except (ValueError, KeyError) as e:
                        st.warning(f"⚠ Snapshot ignored: {e}")

                feedback = run_feedback_cycle(previous, outcome.report.added_vouchers, outcome.dataset)
                st.session_state.dataset = outcome.dataset
                st.session_state.report = outcome.report
                st.session_state.read_warnings = read_warnings
                st.session_state.snapshot = feedback.snapshot
                st.session_state.accuracy = feedback.accuracy
                if feedback.accuracy:
                    key, entry = accuracy_log_entry(feedback)
                    st.session_state.accuracy_log[key] = entry
                r = outcome.report
                st.success(f"✅ {r.items} items | {r.ledgers} ledgers | {r.vouchers:,} vouchers "
                           f"({r.new_vouchers_added} new, {r.duplicates_removed} duplicates skipped)")


# ── Header ────────────────────────────────────────────────────
st.markdown("# 🏭 TallyIQ – Stock, Receivables & Order Dashboard")
st.markdown("*Straight from your Tally exports. Read-only, nothing is written back.*")
st.markdown("---")

dataset = st.session_state.dataset
if dataset is None:
    col1, col2, col3 = st.columns(3)
    with col1:
        st.info("**Step 1 — Masters**\nUpload the stock item / ledger JSON export from the sidebar.")
    with col2:
        st.info("**Step 2 — Transactions**\nUpload the voucher (day book) JSON export. UTF-8 and UTF-16 both work.")
    with col3:
        st.info("**Step 3 — Run Insights**\nClick Import to review warnings, stock, aging, turnover and order predictions.")
    st.stop()

index = build_voucher_index(dataset.vouchers)
records = outstanding_invoices(dataset.vouchers, dataset.ledgers)
cash, bank = cash_and_bank_balance(dataset.ledgers, dataset.vouchers)

m1, m2, m3, m4, m5 = st.columns(5)
m1.metric("Stock Items", f"{len(dataset.items):,}")
m2.metric("Ledgers", f"{len(dataset.ledgers):,}")
m3.metric("Vouchers", f"{len(dataset.vouchers):,}")
m4.metric("Cash (₹)", f"{cash:,.0f}")
m5.metric("Bank (₹)", f"{bank:,.0f}")

tab_review, tab_stock, tab_aging, tab_turnover, tab_orders = st.tabs(
    ["🧾 Import Review", "📦 Stock", "💰 Receivables & Payables", "🔄 Turnover", "🔮 Orders"]
)

# ── Import Review ─────────────────────────────────────────────
with tab_review:
    report = st.session_state.report
    warnings = list(st.session_state.read_warnings or []) + list(report.warnings if report else [])
    df, msg = warnings_table(warnings)
    st.markdown("**Import Warnings**")
    if msg:
        st.info(msg)
    else:
        st.dataframe(df, use_container_width=True, height=300)

    st.markdown("**Debit / Credit Mismatches**")
    df, msg = reconciliation_table(report.reconciliation_issues if report else [])
    if msg:
        st.success(msg)
    else:
        st.caption("Advisory only: these vouchers were imported.")
        st.dataframe(df, use_container_width=True, height=250)

# ── Stock ─────────────────────────────────────────────────────
with tab_stock:
    df, msg = stock_table(dataset, index)
    if msg:
        st.info(msg)
    else:
        st.metric("Low / Zero Stock", int(df['Low Stock'].sum()), delta_color="inverse")

        def _highlight_low(row):
            colour = 'background-color: #fde2e2' if row['Low Stock'] else ''
            return [colour] * len(row)

        st.dataframe(df.style.apply(_highlight_low, axis=1), use_container_width=True, height=360)

        names = {i.name: i for i in dataset.items.values()}
        choice = st.selectbox("Monthly movement for", sorted(names))
        if choice:
            buckets = monthly_buckets_indexed(names[choice], index, n_months=8)
            mdf, mmsg = movement_table(buckets)
            if mmsg:
                st.info(mmsg)
            else:
                st.dataframe(mdf, use_container_width=True)

# ── Receivables & Payables ────────────────────────────────────
with tab_aging:
    summary = aging_summary(records)
    c1, c2 = st.columns(2)
    c1.metric("Receivable (₹)", f"{summary['receivable'].sum():,.0f}")
    c2.metric("Payable (₹)", f"{summary['payable'].sum():,.0f}")
    st.dataframe(summary.style.format('{:,.0f}'), use_container_width=True)

    df, msg = outstanding_table(records)
    if msg:
        st.success(msg)
    else:
        st.dataframe(df, use_container_width=True, height=400)

# ── Turnover ──────────────────────────────────────────────────
with tab_turnover:
    months = st.radio("Period", [3, 6, 12], index=2, horizontal=True, format_func=lambda m: f"{m} months")
    df, msg = turnover_table(item_turnover_indexed(dataset.items.values(), index, period_months=months))
    if msg:
        st.info(msg)
    else:
        def _class_colour(val):
            return {
                'Fast': 'color: #1a7f37', 'Moderate': 'color: #9a6700',
                'Slow': 'color: #bc4c00', 'Dead': 'color: #cf222e',
            }.get(val, '')

        st.dataframe(df.style.map(_class_colour, subset=['Class']), use_container_width=True, height=420)

# ── Orders ────────────────────────────────────────────────────
with tab_orders:
    snapshot = st.session_state.snapshot
    df, msg = predictions_table(snapshot.predictions if snapshot else [])
    if msg:
        st.info(msg)
    else:
        def _conf_colour(val):
            if val >= 70:
                return 'color: #1a7f37'
            if val >= 40:
                return 'color: #9a6700'
            return 'color: #cf222e'

        st.dataframe(df.style.map(_conf_colour, subset=['Confidence %']), use_container_width=True, height=360)
        st.download_button(
            "⬇ Download prediction snapshot",
            data=json.dumps(snapshot_to_dict(snapshot), indent=2),
            file_name=f"predictions_{snapshot.generated_at.date().isoformat()}.json",
            mime="application/json",
        )

    adf, amsg = accuracy_table(st.session_state.accuracy)
    st.markdown("**Accuracy of Previous Predictions**")
    if amsg:
        st.caption(amsg)
    else:
        st.dataframe(adf, use_container_width=True)
        st.download_button(
            "⬇ Download accuracy log",
            data=json.dumps(st.session_state.accuracy_log, indent=2),
            file_name="prediction_accuracy.json",
            mime="application/json",
        )
