"""
Business logic for the MSSP service.

Routers stay thin and delegate to these modules:
- scope_variables: dynamic scope variable definitions, values and search
- scope_search: indexed service-scope search
- global_search: cross-entity relevance search
- dashboard: stats, card data, widget config validation
- aggregation: in-memory filter/group/metric pipeline
- query_execution: custom query runner with result cache
- plugins / plugin_cache: external system connectors
- pool_validation: license and hardware availability
- contract_lifecycle: renewal and expiry tracking
"""
