from __future__ import annotations

from decimal import Decimal

from ..extensions import db
from ..time_utils import to_utc_z


class Category(db.Model):
    __tablename__ = "categories"
    __table_args__ = (
        db.UniqueConstraint("theater_id", "name", name="uq_categories_theater_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    image_url = db.Column(db.String(512), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "theater_id": self.theater_id,
            "name": self.name,
            "sort_order": self.sort_order,
            "image_url": self.image_url,
            "is_active": self.is_active,
        }


class KioskType(db.Model):
    """Kiosk menu section (a product may be listed under one)."""
    __tablename__ = "kiosk_types"
    __table_args__ = (
        db.UniqueConstraint("theater_id", "name", name="uq_kiosk_types_theater_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    image_url = db.Column(db.String(512), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "theater_id": self.theater_id,
            "name": self.name,
            "sort_order": self.sort_order,
            "image_url": self.image_url,
            "is_active": self.is_active,
        }


class Product(db.Model):
    """
    Sellable concession item.

    Category and kiosk type are stored as ids only; listings resolve them
    through lookup maps.

    ORDERABLE: is_active AND is_available.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_theater_active", "theater_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False, index=True)
    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True, index=True)
    kiosk_type_id = db.Column(db.Integer, db.ForeignKey("kiosk_types.id"), nullable=True, index=True)

    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    sku = db.Column(db.String(64), nullable=True)

    # Canonical stock unit: Nos, g, kg, mL, L
    stock_unit = db.Column(db.String(8), nullable=False, default="Nos")
    # Pack string as entered, e.g. "150 ML"
    pack_quantity = db.Column(db.String(32), nullable=True)
    no_qty = db.Column(db.Numeric(12, 3), nullable=False, default=1)

    base_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    sale_price = db.Column(db.Numeric(12, 2), nullable=True)
    discount_percent = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    tax_rate = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    gst_type = db.Column(db.String(16), nullable=False, default="EXCLUSIVE")

    is_veg = db.Column(db.Boolean, nullable=True)
    dietary_tags = db.Column(db.JSON, nullable=False, default=list)

    image_url = db.Column(db.String(512), nullable=True)
    images = db.Column(db.JSON, nullable=False, default=list)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_available = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    version_id = db.Column(db.Integer, nullable=False, default=1)

    theater = db.relationship("Theater", backref=db.backref("products", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def orderable(self) -> bool:
        return bool(self.is_active) and bool(self.is_available)

    @property
    def selling_price(self) -> Decimal:
        """Price before the product's own discount percent."""
        if self.sale_price is not None:
            return Decimal(self.sale_price)
        return Decimal(self.base_price or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "theater_id": self.theater_id,
            "category_id": self.category_id,
            "kiosk_type_id": self.kiosk_type_id,
            "name": self.name,
            "description": self.description,
            "sku": self.sku,
            "stock_unit": self.stock_unit,
            "pack_quantity": self.pack_quantity,
            "no_qty": str(self.no_qty) if self.no_qty is not None else "1",
            "pricing": {
                "basePrice": str(self.base_price),
                "salePrice": str(self.sale_price) if self.sale_price is not None else None,
                "discountPercentage": str(self.discount_percent),
                "taxRate": str(self.tax_rate),
                "gstType": self.gst_type,
            },
            "is_veg": self.is_veg,
            "dietary_tags": list(self.dietary_tags or []),
            "images": list(self.images or []),
            "is_active": self.is_active,
            "is_available": self.is_available,
            "orderable": self.orderable,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class ComboOffer(db.Model):
    """
    Priced bundle of products.

    Components are plain products only; a combo never contains a combo.
    """
    __tablename__ = "combo_offers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    offer_price = db.Column(db.Numeric(12, 2), nullable=False)
    discount_percent = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    tax_rate = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    gst_type = db.Column(db.String(16), nullable=False, default="EXCLUSIVE")
    image_url = db.Column(db.String(512), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    components = db.relationship(
        "ComboComponent",
        backref="combo",
        lazy=True,
        order_by="ComboComponent.position",
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "theater_id": self.theater_id,
            "name": self.name,
            "description": self.description,
            "offer_price": str(self.offer_price),
            "discount_percent": str(self.discount_percent),
            "tax_rate": str(self.tax_rate),
            "gst_type": self.gst_type,
            "image_url": self.image_url,
            "is_active": self.is_active,
            "components": [c.to_dict() for c in self.components],
        }


class ComboComponent(db.Model):
    __tablename__ = "combo_components"
    __table_args__ = (
        db.UniqueConstraint("combo_id", "position", name="uq_combo_components_position"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    combo_id = db.Column(db.Integer, db.ForeignKey("combo_offers.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    per_combo_quantity = db.Column(db.Integer, nullable=False, default=1)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "productId": self.product_id,
            "perComboQuantity": self.per_combo_quantity,
        }
