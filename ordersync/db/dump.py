from tabulate import tabulate
from ordersync.db.models import Order, Payment, Event


def _ts(value):
    return value.isoformat() if value else None


def render_table(title, rows, headers) -> str:
    return f"\n🔹 {title}\n" + tabulate(rows, headers=headers, tablefmt="grid")


def render_tables(db) -> str:
    orders = db.query(Order).order_by(Order.created_at).all()
    payments = db.query(Payment).order_by(Payment.created_at).all()
    events = db.query(Event).order_by(Event.id).all()

    return "\n".join([
        render_table("Orders", [
            [o.id, o.status, o.payment_status, o.payment_method, o.driver_id, str(o.total_amount),
             o.payment_reference, o.version, _ts(o.created_at), _ts(o.updated_at)] for o in orders
        ], ["Order ID", "Status", "Payment", "Method", "Driver", "Total", "Reference", "Version",
            "Created At", "Updated At"]),
        render_table("Payments", [
            [p.reference, p.order_id, p.outcome, p.source, str(p.amount), _ts(p.created_at),
             _ts(p.resolved_at)] for p in payments
        ], ["Reference", "Order ID", "Outcome", "Source", "Amount", "Created At", "Resolved At"]),
        render_table("Events", [
            [e.id, e.order_id, e.type, e.version, str(e.previous_json), _ts(e.ts)] for e in events
        ], ["ID", "Order ID", "Type", "Version", "Previous", "Timestamp"]),
    ])


if __name__ == "__main__":
    from ordersync.db.session import SessionLocal

    with SessionLocal() as session:
        print(render_tables(session))
