from __future__ import annotations

from sqlalchemy import select

from app.medstock.db.models import Department, Product


class CatalogRepository:
    def __init__(self, db):
        self.db = db

    def get_department(self, department_id, organization_id) -> Department | None:
        return (
            self.db.execute(
                select(Department).where(
                    Department.id == department_id,
                    Department.organization_id == organization_id,
                )
            )
            .scalars()
            .first()
        )

    def get_products(self, product_ids, organization_id) -> list[Product]:
        if not product_ids:
            return []
        return (
            self.db.execute(
                select(Product).where(
                    Product.id.in_(list(product_ids)),
                    Product.organization_id == organization_id,
                )
            )
            .scalars()
            .all()
        )
