from decimal import Decimal
from collospot.core.database import SessionLocal
from collospot.models import Plan


SAMPLE_PLANS = [
    {
        "name": "Basic 1 Hour",
        "description": "Quick browsing and messaging",
        "price": Decimal("20"),
        "duration_hours": 1,
        "data_limit": "500MB",
        "speed_limit": "5Mbps",
    },
    {
        "name": "Standard 6 Hours",
        "description": "Half a day of streaming and downloads",
        "price": Decimal("100"),
        "duration_hours": 6,
        "data_limit": "2GB",
        "speed_limit": "10Mbps",
    },
    {
        "name": "Premium 24 Hours",
        "description": "Full day of high speed access",
        "price": Decimal("300"),
        "duration_hours": 24,
        "data_limit": "10GB",
        "speed_limit": "20Mbps",
    },
    {
        "name": "Weekly Package",
        "description": "Seven days for heavy users",
        "price": Decimal("1500"),
        "duration_hours": 168,
        "data_limit": "50GB",
        "speed_limit": "25Mbps",
    },
]


def main():
    db = SessionLocal()
    try:
        for plan in SAMPLE_PLANS:
            existing = db.query(Plan).filter(Plan.name == plan["name"]).first()
            if not existing:
                db.add(Plan(**plan))
        db.commit()
    finally:
        db.close()


if __name__ == "__main__":
    main()
