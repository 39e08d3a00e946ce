import json
from typing import Dict, List

import streamlit as st

from invoicejp.config import get_settings
from invoicejp.csv_export import invoice_fields_to_csv, invoice_fields_to_zip, safe_csv_filename
from invoicejp.dify import DifyClient, ExtractionResult
from invoicejp.fields import FIELD_NAMES, Confidence, resolve_field_confidence
from invoicejp.queue import COMPLETED_STATUSES, FAILED, ExtractionQueue, QueueItem
from invoicejp.records import ExportStore, to_export_record

FIELD_LABELS: Dict[str, str] = {
    "vendor": "Vendor",
    "vendor_registration_number": "Reg. Number",
    "invoice_number": "Invoice No",
    "issue_date": "Issue Date",
    "issue_time": "Issue Time",
    "due_date": "Due Date",
    "currency": "Currency",
    "subtotal": "Subtotal",
    "tax_amount": "Tax Amount",
    "total": "Total",
    "total_amount_tax_inc": "Total (Tax Inc.)",
    "tax10_target_amount": "Tax 10% Target",
    "tax10_amount": "Tax 10% Amount",
    "tax8_target_amount": "Tax 8% Target",
    "tax8_amount": "Tax 8% Amount",
    "payment_method": "Payment Method",
    "document_type": "Document Type",
    "notes": "Notes",
}

FIELD_HELP: Dict[str, str] = {
    "vendor_registration_number": "Japanese invoice registration number (T + 13 digits).",
    "issue_date": "Issue date in YYYY-MM-DD.",
    "issue_time": "Issue time in HH:mm (24h).",
    "due_date": "Payment due date. Leave blank if not present.",
    "currency": "Always JPY.",
    "document_type": "Document type: receipt or invoice.",
}

CONFIDENCE_BADGES = {
    Confidence.HIGH: "🟢 High",
    Confidence.MED: "🟡 Med",
    Confidence.LOW: "🔴 Low",
}

STATUS_LABELS = {
    "queued": "⏳ Queued",
    "processing": "⚙️ Processing",
    "done": "✅ Done",
    "needs_review": "📝 Needs review",
    "failed": "❌ Failed",
}


def get_queue() -> ExtractionQueue:
    """Create the per-session queue on first use (standalone mode, no API server)."""
    if "queue" not in st.session_state:
        settings = get_settings()
        client = DifyClient(settings.dify_api_key, settings.dify_base_url)
        store = ExportStore(settings.records_path)

        def run_extract(item: QueueItem) -> ExtractionResult:
            return client.extract(item.name, item.content, "streamlit", item.content_type)

        def save(item: QueueItem) -> str:
            record = to_export_record(item.fields, item.confidence, item.name, record_id=item.record_id)
            return store.save(record)

        st.session_state["queue"] = ExtractionQueue(run_extract, saver=save)
    return st.session_state["queue"]


def render_queue_table(items: List[QueueItem]):
    table_data = []
    for item in items:
        table_data.append({
            "File": item.name,
            "Status": STATUS_LABELS.get(item.status, item.status),
            "Vendor": item.fields.vendor or "-",
            "Total": item.fields.total or "-",
            "Error": item.error or "-",
        })

    st.dataframe(
        table_data,
        use_container_width=True,
        hide_index=True,
        column_config={
            "File": st.column_config.TextColumn("File", width="medium"),
            "Status": st.column_config.TextColumn("Status", width="small"),
            "Error": st.column_config.TextColumn("Error", width="medium"),
        },
    )


def render_review(queue: ExtractionQueue, item: QueueItem):
    """Per-field review form with confidence badges and CSV download."""
    st.subheader(f"Review: {item.name}")

    with st.form(key=f"review_{item.id}"):
        edited = {}
        for name in FIELD_NAMES:
            level = resolve_field_confidence(item.fields, item.confidence, name)
            label = f"{FIELD_LABELS[name]}  ·  {CONFIDENCE_BADGES[level]}"
            value = getattr(item.fields, name)
            if name == "notes":
                edited[name] = st.text_area(label, value, key=f"{item.id}_{name}")
            else:
                edited[name] = st.text_input(
                    label, value, key=f"{item.id}_{name}",
                    help=FIELD_HELP.get(name), disabled=(name == "currency"),
                )
        submitted = st.form_submit_button("Save")

    if submitted:
        for name, value in edited.items():
            if value != getattr(item.fields, name):
                item = queue.edit_field(item.id, name, value)
        item = queue.save(item.id)
        if item.error:
            st.error(f"{item.error}")
        else:
            st.success("Saved")

    st.download_button(
        label="Download CSV",
        data=invoice_fields_to_csv(item.fields),
        file_name=safe_csv_filename(item.name),
        mime="text/csv",
        key=f"csv_{item.id}",
    )


def main():
    st.set_page_config(page_title="InvoiceJP", layout="wide")
    st.title("InvoiceJP")

    settings = get_settings()

    st.sidebar.header("Configuration")
    if settings.dify_api_key:
        st.sidebar.info(f"Running in **Standalone Mode**.\nDify: {settings.dify_base_url}")
    else:
        st.sidebar.error("DIFY_API_KEY is not set. Extraction is disabled.")
    st.sidebar.markdown("---")
    st.sidebar.write("Usage:")
    st.sidebar.markdown("1. Upload PDF or image invoices\n2. Click **Extract**\n3. Review fields\n4. Download CSV")

    if not settings.dify_api_key:
        return

    queue = get_queue()

    uploaded_files = st.file_uploader(
        "Upload invoices", type=["pdf", "png", "jpg", "jpeg", "webp"], accept_multiple_files=True
    )

    if st.button("Extract"):
        if not uploaded_files:
            st.warning("Please upload one or more files before clicking Extract.")
        else:
            known = {item.name for item in queue.items}
            for f in uploaded_files:
                if f.name not in known:
                    queue.add(f.name, f.getvalue(), f.type)
            with st.spinner("Extracting one file at a time..."):
                queue.run()

    if not queue.items:
        st.info("No invoices yet.")
        return

    st.subheader("Files")
    render_queue_table(queue.items)

    failed = [item for item in queue.items if item.status == FAILED]
    if failed and st.button("Retry failed"):
        for item in failed:
            queue.retry(item.id)
        with st.spinner("Retrying..."):
            queue.run()

    completed = queue.completed()
    if completed:
        names = [item.name for item in completed]
        selected_name = st.selectbox("Review file", names)
        selected = next(item for item in queue.items if item.name == selected_name)
        if selected.status in COMPLETED_STATUSES:
            render_review(queue, selected)

        st.download_button(
            label="Download selected as ZIP",
            data=invoice_fields_to_zip((item.name, item.fields) for item in queue.completed()),
            file_name="invoice-selected-csv.zip",
            mime="application/zip",
        )

        st.download_button(
            label="Download Full Report (JSON)",
            data=json.dumps(
                [{"file": item.name, "status": item.status, "fields": item.fields.to_dict()}
                 for item in queue.items],
                indent=2, ensure_ascii=False,
            ),
            file_name="invoicejp_report.json",
            mime="application/json",
        )

    # Helpful footer / troubleshooting
    st.markdown("---")
    st.markdown("If you encounter issues, check the server logs.")


if __name__ == "__main__":
    main()
