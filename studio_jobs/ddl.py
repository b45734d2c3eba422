"""Database schema DDL for studio jobs."""

PROFILES_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS profiles (
  id                      TEXT PRIMARY KEY,
  email                   TEXT,
  subscription_credits    INT NOT NULL DEFAULT 0 CHECK (subscription_credits >= 0),
  purchased_credits       INT NOT NULL DEFAULT 0 CHECK (purchased_credits >= 0),
  has_first_subscription  BOOLEAN NOT NULL DEFAULT FALSE,
  subscription_plan       TEXT,
  subscription_status     TEXT,
  created_at              TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at              TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

JOBS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS generation_jobs (
  id                     UUID PRIMARY KEY,
  user_id                TEXT NOT NULL REFERENCES profiles (id),
  type                   TEXT NOT NULL CHECK (type IN ('ANALYSIS', 'IMAGE_GEN', 'STYLE_REPLICATE')),
  status                 TEXT NOT NULL CHECK (status IN ('processing', 'success', 'failed')),
  payload                JSONB NOT NULL,

  result_data            JSONB,
  result_url             TEXT,
  error_code             TEXT,
  error_message          TEXT,

  cost_amount            INT NOT NULL DEFAULT 0,
  subscription_deducted  INT NOT NULL DEFAULT 0,
  purchased_deducted     INT NOT NULL DEFAULT 0,
  is_refunded            BOOLEAN NOT NULL DEFAULT FALSE,

  trace_id               TEXT,
  client_job_id          TEXT,
  fe_attempt             INT NOT NULL DEFAULT 1,
  be_retry               INT NOT NULL DEFAULT 0,
  duration_ms            INT,

  created_at             TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at             TIMESTAMPTZ NOT NULL DEFAULT now(),

  CHECK (subscription_deducted + purchased_deducted = cost_amount),
  CHECK (NOT is_refunded OR status = 'failed')
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_generation_jobs_client_job_id
ON generation_jobs (user_id, client_job_id)
WHERE client_job_id IS NOT NULL;

CREATE INDEX IF NOT EXISTS idx_generation_jobs_user_created
ON generation_jobs (user_id, created_at DESC);
"""

TASKS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS generation_job_tasks (
  id          UUID PRIMARY KEY,
  job_id      UUID NOT NULL UNIQUE REFERENCES generation_jobs (id),
  task_type   TEXT NOT NULL,
  status      TEXT NOT NULL CHECK (status IN ('queued', 'running', 'success', 'failed')),
  payload     JSONB NOT NULL,
  attempts    INT NOT NULL DEFAULT 0,
  locked_at   TIMESTAMPTZ,
  run_after   TIMESTAMPTZ NOT NULL DEFAULT now(),
  last_error  TEXT,
  created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_generation_job_tasks_claimable
ON generation_job_tasks (run_after)
WHERE status IN ('queued', 'running');
"""

CREDIT_TRANSACTIONS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS credit_transactions (
  id                   BIGSERIAL PRIMARY KEY,
  user_id              TEXT NOT NULL REFERENCES profiles (id),
  job_id               UUID REFERENCES generation_jobs (id),
  type                 TEXT NOT NULL CHECK (type IN ('deduction', 'refund', 'grant')),
  subscription_amount  INT NOT NULL DEFAULT 0,
  purchased_amount     INT NOT NULL DEFAULT 0,
  description          TEXT,
  created_at           TIMESTAMPTZ NOT NULL DEFAULT now()
);

-- At most one refund row per job
CREATE UNIQUE INDEX IF NOT EXISTS idx_credit_transactions_job_refund
ON credit_transactions (job_id)
WHERE type = 'refund';
"""

SYSTEM_CONFIG_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS system_config (
  key         TEXT PRIMARY KEY,
  value       JSONB NOT NULL,
  updated_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);

INSERT INTO system_config (key, value) VALUES
  ('signup_bonus_credits', '20'),
  ('credit_costs', '{"nano-banana": 3, "nano-banana-pro": 5, "turbo-1k": 8, "turbo-2k": 12, "turbo-4k": 17}')
ON CONFLICT (key) DO NOTHING;
"""

SCHEMA_DDL = "\n".join(
    [
        PROFILES_TABLE_DDL,
        JOBS_TABLE_DDL,
        TASKS_TABLE_DDL,
        CREDIT_TRANSACTIONS_TABLE_DDL,
        SYSTEM_CONFIG_TABLE_DDL,
    ]
)
