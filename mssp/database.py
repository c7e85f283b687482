"""
MSSP Database Initialization

Engine/session setup plus schema creation, additive migrations and seed data
(default admin account and navigation page permissions).
"""

import os
import logging

from sqlalchemy import create_engine, text, inspect, select, func
from sqlalchemy.orm import sessionmaker
import bcrypt

from mssp.config import DATABASE_URL, DEFAULT_ADMIN_PASSWORD
from mssp.models import Base, User, UserRole, PagePermission

logger = logging.getLogger(__name__)


def _make_engine(url: str):
    if url.startswith("sqlite"):
        db_path = url.replace("sqlite:///", "", 1)
        if db_path and db_path != url and not db_path.startswith(":memory:"):
            os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


engine = _make_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


# (page_name, url, display_name, category, icon, admin, manager, engineer, user)
DEFAULT_PAGES = [
    ("dashboard", "/", "Dashboard", "main", "LayoutDashboard", True, True, True, True),
    ("clients", "/clients", "Clients", "main", "Building", True, True, True, True),
    ("contracts", "/contracts", "Contracts", "main", "FileText", True, True, True, False),
    ("services", "/services", "Services", "main", "Settings", True, True, True, True),
    ("service-scopes", "/service-scopes", "Service Scopes", "main", "Layers", True, True, True, False),
    ("license-pools", "/license-pools", "License Pools", "main", "Key", True, True, True, False),
    ("assets", "/assets", "Hardware Assets", "main", "Server", True, True, True, False),
    ("search", "/search", "Search", "main", "Search", True, True, True, True),
    ("integration-engine", "/integration-engine", "Integration Engine", "advanced", "Plug", True, True, True, False),
    ("reports", "/reports", "Reports", "advanced", "BarChart", True, True, False, False),
    ("audit", "/admin/audit", "Audit Management", "admin", "Shield", True, False, False, False),
    ("rbac", "/admin/rbac", "Access Control", "admin", "Lock", True, False, False, False),
    ("user-management", "/admin/users", "User Management", "admin", "Users", True, False, False, False),
]


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def init_db(bind=None):
    """
    Initialize the database with schema and seed data.
    Creates all tables, applies additive migrations, adds default admin + pages.
    """
    bind = bind or engine
    logger.info("Initializing MSSP database...")

    Base.metadata.create_all(bind=bind)
    logger.info("Database schema created")

    _run_migrations(bind)

    session_factory = SessionLocal if bind is engine else sessionmaker(autocommit=False, autoflush=False, bind=bind)
    _seed_default_data(session_factory)

    logger.info("MSSP database initialization complete")


def _run_migrations(bind):
    """
    Run additive migrations.
    Only adds new columns, never drops existing data.
    """
    inspector = inspect(bind)

    # Older databases predate the indexed scope sizing columns
    if "service_scopes" in inspector.get_table_names():
        scope_cols = {col["name"] for col in inspector.get_columns("service_scopes")}
        additions = {
            "eps": "INTEGER",
            "endpoints": "INTEGER",
            "data_volume_gb": "FLOAT",
            "log_sources": "INTEGER",
            "firewall_devices": "INTEGER",
            "pam_users": "INTEGER",
            "response_time_minutes": "INTEGER",
            "coverage_hours": "VARCHAR",
            "service_tier": "VARCHAR",
        }
        with bind.begin() as conn:
            for column, sql_type in additions.items():
                if column not in scope_cols:
                    conn.execute(text(f"ALTER TABLE service_scopes ADD COLUMN {column} {sql_type}"))
                    logger.info(f"Migration: added service_scopes.{column}")

    if "clients" in inspector.get_table_names():
        client_cols = {col["name"] for col in inspector.get_columns("clients")}
        if "deleted_at" not in client_cols:
            with bind.begin() as conn:
                conn.execute(text("ALTER TABLE clients ADD COLUMN deleted_at DATETIME"))
            logger.info("Migration: added clients.deleted_at")


def _seed_default_data(session_factory):
    """Seed default admin user and page permissions if not exists"""
    db = session_factory()

    try:
        user_count = db.scalar(select(func.count()).select_from(User))
        if user_count == 0:
            admin_user = User(
                username="admin",
                password_hash=hash_password(DEFAULT_ADMIN_PASSWORD),
                email="admin@mssp.local",
                first_name="System",
                last_name="Administrator",
                role=UserRole.ADMIN,
                is_active=True
            )
            db.add(admin_user)
            logger.info("Created default admin user (username: admin)")

        existing_pages = set(db.scalars(select(PagePermission.page_name)).all())
        for order, page in enumerate(DEFAULT_PAGES):
            name, url, display, category, icon, admin, manager, engineer, user = page
            if name in existing_pages:
                continue
            db.add(PagePermission(
                page_name=name,
                page_url=url,
                display_name=display,
                category=category,
                icon=icon,
                admin_access=admin,
                manager_access=manager,
                engineer_access=engineer,
                user_access=user,
                sort_order=order,
                is_active=True,
            ))
            logger.info(f"Seeded page permission: {name}")

        db.commit()
        logger.info("Default data seeding complete")

    except Exception as e:
        db.rollback()
        logger.error(f"Failed to seed default data: {e}")
        raise
    finally:
        db.close()


def reset_db(bind=None):
    """Drop and recreate all tables (tests and demos only)"""
    bind = bind or engine
    logger.warning("Resetting MSSP database - all data will be lost")
    Base.metadata.drop_all(bind=bind)
    init_db(bind)


def check_db() -> bool:
    """Lightweight connectivity check"""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database check failed: {e}")
        return False


def get_db():
    """FastAPI dependency for database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
