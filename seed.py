"""
Database seed script: a handful of dropship orders and RTV returns across carriers.
"""
from app.database import SessionLocal, engine, Base
from app.models import DropshipOrder, RtvReturn

SAMPLE_ORDERS = [
    ("CO-1001", "Shipped", "Delhivery Surface", "1490811234567"),
    ("CO-1002", "Delivered", "XpressBees Logistics", "XB100200300"),
    ("CO-1003", "Shipped", "Ecom Express", "ECX9876543"),
    ("CO-1004", "Cancelled", "BlueDart", ""),
    ("CO-1005", "Shipped", "Local Courier Co", "LCC0001"),
]

SAMPLE_RETURNS = [
    ("RT-2001", "CO-1002", "Return Initiated", "Shadowfax", "SF55501", {"3PL Delivery Status": "In Transit"}),
    ("RT-2002", "CO-1003", "Refund Processed", "DTDC", "D1234567", {}),
    ("RT-2003", "CO-1001", "Return Initiated", "Delhivery", "1490819999999", {"3PL Delivery Status": "Delivered"}),
]


def seed_database():
    """Seed the database with sample tracked records"""
    db = SessionLocal()

    try:
        for cust_order_no, status, carrier, awb in SAMPLE_ORDERS:
            if db.query(DropshipOrder).filter(DropshipOrder.cust_order_no == cust_order_no).first():
                print(f"✅ Order {cust_order_no} already exists")
                continue
            db.add(DropshipOrder(
                cust_order_no=cust_order_no,
                status=status,
                fwd_carrier=carrier,
                fwd_awb=awb or None,
                seller_name="Demo Seller",
                tracking_status="pending",
            ))
            print(f"✅ Created order {cust_order_no} ({carrier})")

        for return_id, order_id, status, partner, tracking_number, raw_row in SAMPLE_RETURNS:
            if db.query(RtvReturn).filter(RtvReturn.return_id == return_id).first():
                print(f"✅ Return {return_id} already exists")
                continue
            db.add(RtvReturn(
                return_id=return_id,
                order_id=order_id,
                status=status,
                shipping_partner=partner,
                tracking_number=tracking_number,
                raw_row=raw_row,
                tracking_status="initiated",
            ))
            print(f"✅ Created return {return_id} ({partner})")

        db.commit()
        print("\n🎉 Database seeded successfully!")
    except Exception as e:
        print(f"❌ Error seeding database: {e}")
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    Base.metadata.create_all(bind=engine)
    seed_database()
