"""
MSSP Business Manager — Backend Service

Internal business-management API for a managed security services provider.
Responsibilities:
- Client, contract and service-scope records
- Dynamic scope variables (schema-less key/value filtering)
- Global search, saved searches and search history
- Dashboards, widget configs and card data
- Custom query execution against external systems (Jira, REST, GraphQL)
- License pool and hardware availability checks
- Role-based access control and audit trail
"""
