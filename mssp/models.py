"""
MSSP Database Models

Single relational store for the business-management service:
- Users, page permissions and audit trail (RBAC)
- Clients, contracts, services, service scopes and financial transactions
- Dynamic scope variables (definitions + typed values per scope)
- License pools and hardware assets
- Dashboard settings, saved searches and search history
- External systems, custom queries, executions and query widgets
"""

from sqlalchemy import (
    Column, Integer, String, Enum, ForeignKey, Float, Boolean, DateTime, Text, JSON,
    Numeric, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime
import enum

Base = declarative_base()


# ============================================================================
# ENUM DEFINITIONS
# ============================================================================

class UserRole(str, enum.Enum):
    """User role for RBAC"""
    ADMIN = "admin"  # Full access incl. user and navigation management
    MANAGER = "manager"  # Business data changes, cache control, variable discovery
    ENGINEER = "engineer"  # Technical views and queries
    USER = "user"  # Read-mostly


class ClientStatus(str, enum.Enum):
    PROSPECT = "prospect"
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    ARCHIVED = "archived"


class ContractStatus(str, enum.Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    EXPIRED = "expired"
    TERMINATED = "terminated"


class VariableType(str, enum.Enum):
    INTEGER = "integer"
    DECIMAL = "decimal"
    TEXT = "text"
    BOOLEAN = "boolean"


class FilterComponent(str, enum.Enum):
    RANGE = "range"
    SELECT = "select"
    TEXT = "text"
    BOOLEAN = "boolean"


class AssetStatus(str, enum.Enum):
    AVAILABLE = "available"
    ASSIGNED = "assigned"
    MAINTENANCE = "maintenance"
    RETIRED = "retired"
    LOST = "lost"


class QueryType(str, enum.Enum):
    JQL = "jql"
    SQL = "sql"
    REST = "rest"
    GRAPHQL = "graphql"


class ExecutionStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CACHED = "cached"


class WidgetType(str, enum.Enum):
    CHART = "chart"
    TABLE = "table"
    METRIC = "metric"
    LIST = "list"
    GAUGE = "gauge"


# ============================================================================
# USERS & ACCESS
# ============================================================================

class User(Base):
    """Application users"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    username = Column(String, unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=False)  # bcrypt hash
    email = Column(String, unique=True)
    first_name = Column(String)
    last_name = Column(String)

    # RBAC
    role = Column(Enum(UserRole), default=UserRole.USER, nullable=False)
    is_active = Column(Boolean, default=True)

    # Tracking
    created_at = Column(DateTime, default=datetime.utcnow)
    last_login_at = Column(DateTime)

    # Relationships
    dashboard_settings = relationship("UserDashboardSetting", back_populates="user", cascade="all, delete-orphan")
    saved_searches = relationship("SavedSearch", back_populates="user", cascade="all, delete-orphan")

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)


class PagePermission(Base):
    """Navigation pages and which roles may see them"""
    __tablename__ = "page_permissions"

    id = Column(Integer, primary_key=True)
    page_name = Column(String, unique=True, nullable=False)
    page_url = Column(String, nullable=False)
    display_name = Column(String, nullable=False)
    description = Column(Text)
    category = Column(String, default="main")
    icon = Column(String)

    admin_access = Column(Boolean, default=True)
    manager_access = Column(Boolean, default=False)
    engineer_access = Column(Boolean, default=False)
    user_access = Column(Boolean, default=False)

    sort_order = Column(Integer, default=0)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class AuditLog(Base):
    """Audit trail for user and system actions"""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"))
    action = Column(String, nullable=False)  # 'create', 'update', 'delete', 'execute', ...

    # Context
    entity_type = Column(String, nullable=False)  # 'scope_variable', 'contract', ...
    entity_id = Column(Integer)
    entity_name = Column(String)

    # Details
    description = Column(Text, nullable=False)
    severity = Column(String, default="info")  # 'info', 'low', 'medium', 'high', 'critical'
    category = Column(String, default="general")
    details = Column(JSON)

    # Metadata
    ip_address = Column(String)
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)

    # Relationships
    user = relationship("User")


# ============================================================================
# CLIENTS, SERVICES, CONTRACTS
# ============================================================================

class Client(Base):
    __tablename__ = "clients"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    short_name = Column(String)
    domain = Column(String)
    industry = Column(String)
    company_size = Column(String)
    status = Column(Enum(ClientStatus), default=ClientStatus.PROSPECT, nullable=False)
    notes = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    deleted_at = Column(DateTime)  # Soft delete

    # Relationships
    contacts = relationship("ClientContact", back_populates="client", cascade="all, delete-orphan")
    contracts = relationship("Contract", back_populates="client")


class ClientContact(Base):
    __tablename__ = "client_contacts"

    id = Column(Integer, primary_key=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False)
    name = Column(String, nullable=False)
    email = Column(String)
    phone = Column(String)
    title = Column(String)
    is_primary = Column(Boolean, default=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    client = relationship("Client", back_populates="contacts")


class Service(Base):
    """Service catalog entry (e.g. 'Managed SIEM')"""
    __tablename__ = "services"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    category = Column(String, nullable=False)
    description = Column(Text)
    delivery_model = Column(String)  # 'Serverless', 'On-Prem Engineer', 'Hybrid'
    base_price = Column(Numeric(12, 2))
    pricing_unit = Column(String)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Contract(Base):
    __tablename__ = "contracts"

    id = Column(Integer, primary_key=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False)
    name = Column(String, nullable=False)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    auto_renewal = Column(Boolean, default=False)
    total_value = Column(Numeric(12, 2))
    status = Column(Enum(ContractStatus), default=ContractStatus.DRAFT, nullable=False)
    notes = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    client = relationship("Client", back_populates="contracts")
    scopes = relationship("ServiceScope", back_populates="contract", cascade="all, delete-orphan")


class ServiceScope(Base):
    """A service delivered under a contract, with its sizing parameters"""
    __tablename__ = "service_scopes"

    id = Column(Integer, primary_key=True)
    contract_id = Column(Integer, ForeignKey("contracts.id"), nullable=False)
    service_id = Column(Integer, ForeignKey("services.id"), nullable=False)
    scope_definition = Column(JSON)  # {"description": ..., "deliverables": [{"item": ..., "value": ...}]}
    status = Column(String, default="active")
    monthly_value = Column(Numeric(12, 2))
    description = Column(Text)
    notes = Column(Text)

    # Indexed sizing columns
    eps = Column(Integer, index=True)
    endpoints = Column(Integer, index=True)
    data_volume_gb = Column(Float, index=True)
    log_sources = Column(Integer, index=True)
    firewall_devices = Column(Integer, index=True)
    pam_users = Column(Integer, index=True)
    response_time_minutes = Column(Integer, index=True)
    coverage_hours = Column(String, index=True)  # '8x5', '12x5', '24x7'
    service_tier = Column(String, index=True)  # 'Basic', 'Standard', 'Premium', 'Enterprise'

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    contract = relationship("Contract", back_populates="scopes")
    service = relationship("Service")
    variables = relationship("ScopeVariableValue", back_populates="scope", cascade="all, delete-orphan")


class FinancialTransaction(Base):
    """Revenue or expense booked against a client (and optionally a contract)"""
    __tablename__ = "financial_transactions"

    id = Column(Integer, primary_key=True)
    client_id = Column(Integer, ForeignKey("clients.id"))
    contract_id = Column(Integer, ForeignKey("contracts.id"))
    transaction_type = Column(String, nullable=False, index=True)  # 'revenue', 'expense'
    amount = Column(Numeric(12, 2), nullable=False)
    description = Column(Text)
    status = Column(String, default="completed")
    transaction_date = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    client = relationship("Client")


# ============================================================================
# DYNAMIC SCOPE VARIABLES
# ============================================================================

class ScopeVariableDefinition(Base):
    """Known variable names and how to filter on them"""
    __tablename__ = "scope_variable_definitions"

    id = Column(Integer, primary_key=True)
    variable_name = Column(String, unique=True, nullable=False, index=True)
    variable_type = Column(Enum(VariableType), nullable=False)
    display_name = Column(String, nullable=False)
    description = Column(Text)
    is_filterable = Column(Boolean, default=True)
    is_indexed = Column(Boolean, default=False)
    filter_component = Column(Enum(FilterComponent))
    unit = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ScopeVariableValue(Base):
    """One typed value of one variable for one scope"""
    __tablename__ = "scope_variable_values"
    __table_args__ = (
        UniqueConstraint("service_scope_id", "variable_name", name="uq_scope_variable"),
    )

    id = Column(Integer, primary_key=True)
    service_scope_id = Column(Integer, ForeignKey("service_scopes.id", ondelete="CASCADE"), nullable=False, index=True)
    variable_name = Column(String, ForeignKey("scope_variable_definitions.variable_name"), nullable=False, index=True)

    value_text = Column(Text)
    value_integer = Column(Integer, index=True)
    value_decimal = Column(Float, index=True)
    value_boolean = Column(Boolean, index=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    scope = relationship("ServiceScope", back_populates="variables")
    definition = relationship("ScopeVariableDefinition")

    @property
    def value(self):
        for candidate in (self.value_integer, self.value_decimal, self.value_boolean):
            if candidate is not None:
                return candidate
        return self.value_text


# ============================================================================
# LICENSES & HARDWARE
# ============================================================================

class LicensePool(Base):
    __tablename__ = "license_pools"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    vendor = Column(String, nullable=False)
    product_name = Column(String, nullable=False)
    license_type = Column(String)
    total_licenses = Column(Integer, nullable=False, default=0)
    available_licenses = Column(Integer, nullable=False, default=0)
    ordered_licenses = Column(Integer, default=0)
    cost_per_license = Column(Numeric(12, 2))
    renewal_date = Column(DateTime)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    assignments = relationship("ClientLicense", back_populates="pool")


class ClientLicense(Base):
    __tablename__ = "client_licenses"

    id = Column(Integer, primary_key=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False)
    license_pool_id = Column(Integer, ForeignKey("license_pools.id"), nullable=False)
    service_scope_id = Column(Integer, ForeignKey("service_scopes.id"))
    assigned_licenses = Column(Integer, nullable=False)
    assigned_date = Column(DateTime, default=datetime.utcnow)
    notes = Column(Text)

    pool = relationship("LicensePool", back_populates="assignments")
    client = relationship("Client")


class HardwareAsset(Base):
    __tablename__ = "hardware_assets"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    category = Column(String, nullable=False)
    manufacturer = Column(String)
    model = Column(String)
    serial_number = Column(String, unique=True)
    purchase_cost = Column(Numeric(12, 2))
    warranty_expiry = Column(DateTime)
    status = Column(Enum(AssetStatus), default=AssetStatus.AVAILABLE, nullable=False)
    location = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)


class ClientHardwareAssignment(Base):
    __tablename__ = "client_hardware_assignments"

    id = Column(Integer, primary_key=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False)
    hardware_asset_id = Column(Integer, ForeignKey("hardware_assets.id"), nullable=False)
    service_scope_id = Column(Integer, ForeignKey("service_scopes.id"))
    assigned_date = Column(DateTime, default=datetime.utcnow)
    returned_date = Column(DateTime)
    status = Column(String, default="active")  # 'active', 'returned', 'maintenance'

    asset = relationship("HardwareAsset")


# ============================================================================
# DASHBOARDS & SEARCH
# ============================================================================

class UserDashboardSetting(Base):
    """Per-user dashboard card layout"""
    __tablename__ = "user_dashboard_settings"
    __table_args__ = (
        UniqueConstraint("user_id", "card_id", name="uq_user_card"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    card_id = Column(String, nullable=False)
    title = Column(String, nullable=False)
    type = Column(String, nullable=False)  # 'metric', 'chart', 'table', 'query'
    category = Column(String, default="dashboard")
    data_source = Column(String)
    size = Column(String, default="small")
    visible = Column(Boolean, default=True)
    position = Column(Integer, default=0)
    config = Column(JSON, default=dict)
    is_built_in = Column(Boolean, default=False)
    is_removable = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="dashboard_settings")


class SavedSearch(Base):
    __tablename__ = "saved_searches"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text)
    search_config = Column(JSON, nullable=False)
    entity_types = Column(JSON, default=list)
    is_public = Column(Boolean, default=False)
    is_quick_filter = Column(Boolean, default=False)
    use_count = Column(Integer, default=0)
    last_used = Column(DateTime)
    tags = Column(JSON, default=list)
    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="saved_searches")


class SearchHistory(Base):
    __tablename__ = "search_history"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    search_query = Column(Text, nullable=False)
    search_config = Column(JSON)
    entity_types = Column(JSON, default=list)
    results_count = Column(Integer, default=0)
    execution_time = Column(Integer)  # ms
    created_at = Column(DateTime, default=datetime.utcnow, index=True)


# ============================================================================
# EXTERNAL SYSTEMS & CUSTOM QUERIES
# ============================================================================

class ExternalSystem(Base):
    """Connection record for an external data source (Jira, REST API, ...)"""
    __tablename__ = "external_systems"

    id = Column(Integer, primary_key=True)
    system_name = Column(String, unique=True, nullable=False)  # plugin key, e.g. 'jira'
    display_name = Column(String, nullable=False)
    base_url = Column(String, nullable=False)
    auth_type = Column(String, default="none")  # 'none', 'basic', 'bearer', 'api_key'
    auth_config = Column(JSON, default=dict)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    queries = relationship("CustomQuery", back_populates="system")


class CustomQuery(Base):
    __tablename__ = "custom_queries"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    system_id = Column(Integer, ForeignKey("external_systems.id"), nullable=False)
    query_type = Column(Enum(QueryType), nullable=False)
    query = Column(Text, nullable=False)
    parameters = Column(JSON, default=dict)
    data_mapping = Column(JSON, default=dict)
    refresh_interval = Column(Integer, default=300)  # seconds
    cache_enabled = Column(Boolean, default=True)
    is_active = Column(Boolean, default=True)
    is_public = Column(Boolean, default=False)
    created_by = Column(Integer, ForeignKey("users.id"))
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    system = relationship("ExternalSystem", back_populates="queries")
    executions = relationship("QueryExecution", back_populates="query", cascade="all, delete-orphan")
    widgets = relationship("QueryWidget", back_populates="query", cascade="all, delete-orphan")


class QueryExecution(Base):
    """Execution log entry for a custom query"""
    __tablename__ = "query_executions"

    id = Column(Integer, primary_key=True)
    query_id = Column(Integer, ForeignKey("custom_queries.id"), nullable=False, index=True)
    executed_by = Column(Integer, ForeignKey("users.id"))
    status = Column(Enum(ExecutionStatus), nullable=False)
    result_data = Column(JSON)
    execution_time = Column(Integer)  # ms
    error = Column(Text)
    record_count = Column(Integer)
    started_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime)

    query = relationship("CustomQuery", back_populates="executions")


class QueryWidget(Base):
    __tablename__ = "query_widgets"

    id = Column(Integer, primary_key=True)
    query_id = Column(Integer, ForeignKey("custom_queries.id"), nullable=False)
    name = Column(String, nullable=False)
    widget_type = Column(Enum(WidgetType), nullable=False)
    visual_config = Column(JSON, default=dict)
    data_config = Column(JSON, default=dict)
    size = Column(String, default="medium")
    position = Column(Integer, default=0)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    query = relationship("CustomQuery", back_populates="widgets")
