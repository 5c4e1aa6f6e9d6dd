"""Destructive and best-effort schema operations.

Used by the development orchestrator and rollback handler:
- drop and recreate a domain's schema
- seed fixed reference data
- grant the current user privileges on a domain's tables and sequences
"""

import logging
from typing import Optional

from ..config import MigrationConfig, get_config, schema_name
from ..connection import ConnectionError, QueryError, get_connection, quote_ident
from .base import RecreationError

logger = logging.getLogger(__name__)


# Reference data inserted after a successful development migration run
SEED_DATA: dict[str, list[str]] = {
    "content": [
        """
        INSERT INTO content_schema.content_storage_backend
            (backend_name, backend_type, is_active, priority_order, base_url)
        VALUES ('azurite-local', 'azure-blob', true, 1, 'http://azurite:10000')
        ON CONFLICT (backend_name) DO NOTHING
        """,
    ],
    "services": [
        """
        INSERT INTO services_schema.service_categories
            (name, slug, order_number, is_default_unassigned)
        VALUES ('General Services', 'general', 1, true)
        ON CONFLICT (slug) DO NOTHING
        """,
        """
        INSERT INTO services_schema.service_categories (name, slug, order_number)
        VALUES
            ('Emergency Services', 'emergency', 2),
            ('Outpatient Services', 'outpatient', 3),
            ('Inpatient Services', 'inpatient', 4)
        ON CONFLICT (slug) DO NOTHING
        """,
        """
        INSERT INTO services_schema.services
            (title, description, slug, category_id, delivery_mode, publishing_status)
        SELECT 'Emergency Care', '24/7 emergency medical services', 'emergency-care',
               sc.category_id, 'outpatient_service', 'published'
        FROM services_schema.service_categories sc
        WHERE sc.slug = 'emergency'
        ON CONFLICT (slug) DO NOTHING
        """,
        """
        INSERT INTO services_schema.featured_categories (category_id, feature_position)
        SELECT sc.category_id, 1
        FROM services_schema.service_categories sc
        WHERE sc.slug = 'emergency'
        ON CONFLICT (feature_position) DO NOTHING
        """,
    ],
}


class SchemaManager:
    """Schema-level operations on a single domain at a time."""

    def __init__(
        self,
        config: Optional[MigrationConfig] = None,
        seed_data: Optional[dict[str, list[str]]] = None,
        connect=get_connection,
    ):
        self.config = config or get_config()
        self.seed_data = SEED_DATA if seed_data is None else seed_data
        self._connect = connect

    async def recreate_domain_schema(self, domain: str) -> None:
        """Drop a domain's schema with everything in it and create it empty.

        Raises:
            RecreationError: If either statement fails
        """
        schema = quote_ident(schema_name(domain))
        logger.info(f"Recreating schema: {schema_name(domain)}")

        try:
            async with self._connect(self.config) as conn:
                await conn.execute(f"DROP SCHEMA IF EXISTS {schema} CASCADE")
                await conn.execute(f"CREATE SCHEMA IF NOT EXISTS {schema}")
        except (ConnectionError, QueryError) as e:
            raise RecreationError(
                f"failed to recreate schema for domain '{domain}': {e}",
                domain=domain,
            ) from e

    def has_seed_data(self, domain: str) -> bool:
        return bool(self.seed_data.get(domain))

    async def seed_domain(self, domain: str) -> None:
        """Insert the domain's reference data. Statements are idempotent."""
        statements = self.seed_data.get(domain, [])
        if not statements:
            return

        async with self._connect(self.config) as conn:
            async with conn.transaction():
                for stmt in statements:
                    await conn.execute(stmt)
        logger.debug(f"Seeded {len(statements)} statement(s) into {domain}")

    async def grant_domain_privileges(self, domain: str) -> None:
        """Grant the current user full access to a domain's objects."""
        schema = quote_ident(schema_name(domain))
        async with self._connect(self.config) as conn:
            await conn.execute(f"GRANT ALL PRIVILEGES ON ALL TABLES IN SCHEMA {schema} TO current_user")
            await conn.execute(f"GRANT ALL PRIVILEGES ON ALL SEQUENCES IN SCHEMA {schema} TO current_user")
