from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Float,
    Index,
    Integer,
    String,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    created_at = Column(Float, nullable=False)
    name = Column(String, nullable=False)
    department = Column(String, nullable=False)
    qty_a = Column(Integer, nullable=False, default=0)
    qty_b = Column(Integer, nullable=False, default=0)
    # estimate at submission time; the charge is settled after the cutoff
    total_price = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("qty_a >= 0", name="ck_orders_qty_a"),
        CheckConstraint("qty_b >= 0", name="ck_orders_qty_b"),
        CheckConstraint("length(name) > 0", name="ck_orders_name"),
        CheckConstraint("length(department) > 0", name="ck_orders_dept"),
        Index("idx_orders_created_at", "created_at"),
    )


class Setting(Base):
    __tablename__ = "settings"
    key = Column(String, primary_key=True)
    value = Column(Boolean, nullable=False, default=False)
