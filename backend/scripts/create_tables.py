from settings import settings
import psycopg

# scheduled_time columns are TIMESTAMP WITHOUT TIME ZONE on purpose:
# they hold floating local wall-clock times.
DDL = '''
CREATE TABLE IF NOT EXISTS calendar_events (
    id TEXT PRIMARY KEY,
    profile_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    source_id TEXT NOT NULL,
    title TEXT NOT NULL,
    scheduled_time TIMESTAMP NOT NULL,
    end_time TIMESTAMP,
    status TEXT NOT NULL DEFAULT 'pending',
    completed_time TIMESTAMP,
    metadata JSONB,
    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT now(),
    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT now(),
    UNIQUE (source_id, event_type, scheduled_time)
);

CREATE INDEX IF NOT EXISTS idx_calendar_profile_time ON calendar_events (profile_id, scheduled_time);
CREATE INDEX IF NOT EXISTS idx_calendar_source ON calendar_events (source_id);

CREATE TABLE IF NOT EXISTS medication_history (
    id BIGSERIAL PRIMARY KEY,
    profile_id TEXT NOT NULL,
    medication_id TEXT NOT NULL,
    scheduled_time TIMESTAMP NOT NULL,
    actual_time TIMESTAMP,
    status TEXT NOT NULL,
    notes TEXT,
    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_medication_history_key
    ON medication_history (medication_id, scheduled_time, id DESC);
CREATE INDEX IF NOT EXISTS idx_medication_history_profile
    ON medication_history (profile_id, scheduled_time);

CREATE TABLE IF NOT EXISTS supplement_history (
    id BIGSERIAL PRIMARY KEY,
    profile_id TEXT NOT NULL,
    supplement_id TEXT NOT NULL,
    scheduled_time TIMESTAMP NOT NULL,
    actual_time TIMESTAMP,
    status TEXT NOT NULL,
    notes TEXT,
    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_supplement_history_key
    ON supplement_history (supplement_id, scheduled_time, id DESC);
CREATE INDEX IF NOT EXISTS idx_supplement_history_profile
    ON supplement_history (profile_id, scheduled_time);

CREATE TABLE IF NOT EXISTS source_entities (
    kind TEXT NOT NULL,
    id TEXT NOT NULL,
    profile_id TEXT NOT NULL,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    payload JSONB NOT NULL,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT now(),
    PRIMARY KEY (kind, id)
);

CREATE INDEX IF NOT EXISTS idx_source_entities_profile ON source_entities (profile_id, kind);
'''

print('Connecting to', settings.db_url)
with psycopg.connect(settings.db_url, connect_timeout=settings.store_timeout_seconds) as conn:
    with conn.cursor() as cur:
        cur.execute(DDL)
    conn.commit()
print('DDL applied')
