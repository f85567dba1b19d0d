from datetime import date, datetime, timedelta

from sqlalchemy import select

from app.medstock.db.models import Department, Organization, Product, Stock, StockBatch


DEMO_ORGANIZATION = ("Demo General Hospital", "demo-general")
DEMO_DEPARTMENTS = [
    ("Central Pharmacy", "central-pharmacy"),
    ("Ward 3B", "ward-3b"),
]
DEMO_PRODUCTS = [
    ("PARA-500", "Paracetamol 500mg tablet", "tablet"),
    ("NACL-09", "Sodium chloride 0.9% 500ml", "bag"),
]
# (lot suffix, days until expiry, quantity) stocked in the pharmacy for every product
DEMO_BATCHES = [
    ("A", 30, 120),
    ("B", 180, 300),
    ("C", 540, 500),
]


def _get_or_create_organization(db):
    name, slug = DEMO_ORGANIZATION
    organization = db.execute(select(Organization).where(Organization.slug == slug)).scalars().first()
    if organization:
        return organization
    organization = Organization(name=name, slug=slug)
    db.add(organization)
    db.flush()
    return organization


def _get_or_create_departments(db, organization):
    existing = {
        department.slug: department
        for department in db.execute(
            select(Department).where(Department.organization_id == organization.id)
        ).scalars()
    }
    for name, slug in DEMO_DEPARTMENTS:
        if slug not in existing:
            existing[slug] = Department(organization_id=organization.id, name=name, slug=slug)
            db.add(existing[slug])
    db.flush()
    return [existing[slug] for _, slug in DEMO_DEPARTMENTS]


def _get_or_create_products(db, organization):
    existing = {
        product.code: product
        for product in db.execute(select(Product).where(Product.organization_id == organization.id)).scalars()
    }
    for code, name, unit in DEMO_PRODUCTS:
        if code not in existing:
            existing[code] = Product(organization_id=organization.id, code=code, name=name, base_unit=unit)
            db.add(existing[code])
    db.flush()
    return [existing[code] for code, _, _ in DEMO_PRODUCTS]


def _stock_pharmacy(db, organization, pharmacy, products, today: date):
    now = datetime.utcnow()
    for product in products:
        stock = (
            db.execute(select(Stock).where(Stock.department_id == pharmacy.id, Stock.product_id == product.id))
            .scalars()
            .first()
        )
        if stock:
            continue
        stock = Stock(
            organization_id=organization.id,
            department_id=pharmacy.id,
            product_id=product.id,
            last_movement_at=now,
        )
        db.add(stock)
        db.flush()
        for suffix, days, quantity in DEMO_BATCHES:
            db.add(
                StockBatch(
                    stock_id=stock.id,
                    lot_number=f"{product.code}-{suffix}",
                    expiry_date=today + timedelta(days=days),
                    manufacture_date=today - timedelta(days=365),
                    total_quantity=quantity,
                    available_quantity=quantity,
                    reserved_quantity=0,
                    created_at=now,
                )
            )


def run_seed(db, *, today: date | None = None):
    organization = _get_or_create_organization(db)
    pharmacy, ward = _get_or_create_departments(db, organization)
    products = _get_or_create_products(db, organization)
    _stock_pharmacy(db, organization, pharmacy, products, today or date.today())
    db.commit()
    return {
        "organization_id": str(organization.id),
        "pharmacy_id": str(pharmacy.id),
        "ward_id": str(ward.id),
        "product_ids": [str(product.id) for product in products],
    }


if __name__ == "__main__":
    from app.medstock.db.session import session_scope

    with session_scope() as session:
        print(run_seed(session))
