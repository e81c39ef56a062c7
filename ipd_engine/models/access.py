# ipd_engine/models/access.py
"""
Users, roles and permission codes: just enough for the default
capability checker (``core/rbac.py``) and bearer-token lookup.
"""
from sqlalchemy import Boolean, Column, ForeignKey, Integer, String, Table
from sqlalchemy.orm import relationship

from ipd_engine.db.base import Base

_MYSQL = {
    "mysql_engine": "InnoDB",
    "mysql_charset": "utf8mb4",
    "mysql_collate": "utf8mb4_unicode_ci",
}

user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", Integer, ForeignKey("users.id"), primary_key=True),
    Column("role_id", Integer, ForeignKey("roles.id"), primary_key=True),
    **_MYSQL,
)

role_permissions = Table(
    "role_permissions",
    Base.metadata,
    Column("role_id", Integer, ForeignKey("roles.id"), primary_key=True),
    Column("permission_id", Integer, ForeignKey("permissions.id"), primary_key=True),
    **_MYSQL,
)


class User(Base):
    __tablename__ = "users"
    __table_args__ = _MYSQL

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(120), nullable=False)
    email = Column(String(191), unique=True, nullable=False)  # token subject
    is_active = Column(Boolean, default=True)
    is_admin = Column(Boolean, default=False)

    roles = relationship("Role", secondary=user_roles, back_populates="users")


class Role(Base):
    __tablename__ = "roles"
    __table_args__ = _MYSQL

    id = Column(Integer, primary_key=True)
    name = Column(String(120), unique=True, nullable=False)
    description = Column(String(255))

    users = relationship("User", secondary=user_roles, back_populates="roles")
    permissions = relationship("Permission", secondary=role_permissions,
                               back_populates="roles")


class Permission(Base):
    __tablename__ = "permissions"
    __table_args__ = _MYSQL

    id = Column(Integer, primary_key=True)
    code = Column(String(120), unique=True, nullable=False)  # "ipd.transfers.approve"
    label = Column(String(255), nullable=False)
    module = Column(String(120), nullable=False)  # "ipd.transfers"

    roles = relationship("Role", secondary=role_permissions, back_populates="permissions")
