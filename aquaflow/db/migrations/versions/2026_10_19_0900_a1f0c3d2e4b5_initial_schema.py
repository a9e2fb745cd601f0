"""initial_schema

Revision ID: a1f0c3d2e4b5
Revises:
Create Date: 2026-10-19 09:00

"""
from alembic import op

# revision identifiers, used by Alembic.
revision = 'a1f0c3d2e4b5'
down_revision = None
branch_labels = None
depends_on = None


def _run(sql):
    # asyncpg prepares each statement, so run them one at a time
    for statement in sql.split(";"):
        if statement.strip():
            op.execute(statement)


def upgrade():
    _run("""
        CREATE TABLE IF NOT EXISTS users (
            id SERIAL PRIMARY KEY,
            name VARCHAR(200) NOT NULL,
            email VARCHAR(200) UNIQUE,
            phone VARCHAR(50),
            role VARCHAR(30) NOT NULL DEFAULT 'VIEWER'
                CONSTRAINT user_role CHECK (role IN ('ADMIN', 'SECTOR_MANAGER', 'TECHNICIAN', 'VIEWER')),
            is_active BOOLEAN NOT NULL DEFAULT TRUE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        CREATE INDEX IF NOT EXISTS ix_users_id ON users(id);
    """)

    _run("""
        CREATE TABLE IF NOT EXISTS sites (
            id SERIAL PRIMARY KEY,
            name VARCHAR(200) NOT NULL,
            reservoir_capacity FLOAT NOT NULL,
            current_level FLOAT NOT NULL DEFAULT 0,
            status VARCHAR(30) NOT NULL DEFAULT 'ACTIVE'
                CONSTRAINT site_status CHECK (status IN ('ACTIVE', 'MAINTENANCE', 'EMERGENCY', 'INACTIVE')),
            sector_manager_id INTEGER REFERENCES users(id),
            last_refill TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        CREATE INDEX IF NOT EXISTS ix_sites_id ON sites(id);
        CREATE INDEX IF NOT EXISTS ix_sites_status ON sites(status);
    """)

    _run("""
        CREATE TABLE IF NOT EXISTS households (
            id SERIAL PRIMARY KEY,
            site_id INTEGER NOT NULL REFERENCES sites(id),
            name VARCHAR(200) NOT NULL,
            contact VARCHAR(50),
            email VARCHAR(200),
            is_active BOOLEAN NOT NULL DEFAULT TRUE
        );
        CREATE INDEX IF NOT EXISTS ix_households_id ON households(id);
        CREATE INDEX IF NOT EXISTS ix_households_site_id ON households(site_id);
    """)

    _run("""
        CREATE TABLE IF NOT EXISTS water_levels (
            id SERIAL PRIMARY KEY,
            site_id INTEGER NOT NULL REFERENCES sites(id),
            level FLOAT NOT NULL,
            source VARCHAR(30) NOT NULL DEFAULT 'SENSOR'
                CONSTRAINT reading_source CHECK (source IN ('SENSOR', 'MANUAL', 'ESTIMATED')),
            timestamp TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        CREATE INDEX IF NOT EXISTS ix_water_levels_id ON water_levels(id);
        CREATE INDEX IF NOT EXISTS ix_water_levels_site_timestamp ON water_levels(site_id, timestamp);
    """)

    _run("""
        CREATE TABLE IF NOT EXISTS maintenances (
            id SERIAL PRIMARY KEY,
            site_id INTEGER NOT NULL REFERENCES sites(id),
            status VARCHAR(30) NOT NULL DEFAULT 'SCHEDULED'
                CONSTRAINT maintenance_status CHECK (status IN ('SCHEDULED', 'IN_PROGRESS', 'DONE', 'CANCELLED')),
            scheduled_at TIMESTAMPTZ NOT NULL,
            description TEXT
        );
        CREATE INDEX IF NOT EXISTS ix_maintenances_id ON maintenances(id);
        CREATE INDEX IF NOT EXISTS ix_maintenances_site_id ON maintenances(site_id);
    """)

    _run("""
        CREATE TABLE IF NOT EXISTS alerts (
            id SERIAL PRIMARY KEY,
            site_id INTEGER NOT NULL REFERENCES sites(id),
            type VARCHAR(30) NOT NULL
                CONSTRAINT alert_type CHECK (type IN (
                    'LOW_WATER_LEVEL', 'SENSOR_FAILURE', 'MAINTENANCE_DUE', 'PUMP_FAILURE',
                    'LEAK_DETECTED', 'WATER_QUALITY', 'OTHER'
                )),
            level VARCHAR(30) NOT NULL
                CONSTRAINT alert_level CHECK (level IN ('INFO', 'WARNING', 'CRITICAL', 'EMERGENCY')),
            message TEXT NOT NULL,
            is_active BOOLEAN NOT NULL DEFAULT TRUE,
            action_taken TEXT,
            created_by_id INTEGER REFERENCES users(id),
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            resolved_at TIMESTAMPTZ
        );
        CREATE INDEX IF NOT EXISTS ix_alerts_id ON alerts(id);
        CREATE INDEX IF NOT EXISTS ix_alerts_site_type ON alerts(site_id, type);
        CREATE UNIQUE INDEX IF NOT EXISTS uq_alerts_active_site_type ON alerts(site_id, type) WHERE is_active IS true;
    """)

    _run("""
        CREATE TABLE IF NOT EXISTS alert_notifications (
            id SERIAL PRIMARY KEY,
            alert_id INTEGER NOT NULL REFERENCES alerts(id),
            channel VARCHAR(30) NOT NULL
                CONSTRAINT notification_channel CHECK (channel IN ('EMAIL', 'SMS', 'WEBHOOK')),
            recipient VARCHAR(500) NOT NULL,
            sent_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            delivery_status VARCHAR(30) NOT NULL
                CONSTRAINT delivery_status CHECK (delivery_status IN ('DELIVERED', 'FAILED', 'SKIPPED')),
            error TEXT,
            message_body TEXT
        );
        CREATE INDEX IF NOT EXISTS ix_alert_notifications_id ON alert_notifications(id);
        CREATE INDEX IF NOT EXISTS ix_alert_notifications_alert_id ON alert_notifications(alert_id);
    """)


def downgrade():
    op.execute("DROP TABLE IF EXISTS alert_notifications CASCADE")
    op.execute("DROP TABLE IF EXISTS alerts CASCADE")
    op.execute("DROP TABLE IF EXISTS maintenances CASCADE")
    op.execute("DROP TABLE IF EXISTS water_levels CASCADE")
    op.execute("DROP TABLE IF EXISTS households CASCADE")
    op.execute("DROP TABLE IF EXISTS sites CASCADE")
    op.execute("DROP TABLE IF EXISTS users CASCADE")
