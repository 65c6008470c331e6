import logging
import aiosqlite
import os

logger = logging.getLogger("basket.db")
DB_PATH = os.environ.get("DB_PATH", "/data/basket.db")

async def get_db() -> aiosqlite.Connection:
    """Dependency: yields an open DB connection."""
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA foreign_keys = ON")
        yield db

async def init_db():
    """Create all tables if they don't exist, and run any pending migrations."""
    os.makedirs(os.path.dirname(DB_PATH) or ".", exist_ok=True)
    async with aiosqlite.connect(DB_PATH) as db:
        await db.executescript(SCHEMA)
        await migrate(db)
        await db.commit()
    logger.info("Initialized at %s", DB_PATH)


async def migrate(db: aiosqlite.Connection):
    """Add columns introduced after the initial schema.

    SQLite doesn't support ALTER TABLE ADD COLUMN IF NOT EXISTS, so we
    check PRAGMA table_info first and only ALTER if the column is missing.
    """
    async with db.execute("PRAGMA table_info(receipts)") as cur:
        cols = {row[1] async for row in cur}
    if "card_last_four" not in cols:
        await db.execute("ALTER TABLE receipts ADD COLUMN card_last_four TEXT")
        logger.info("Migration: added receipts.card_last_four")

    async with db.execute("PRAGMA table_info(verified_products)") as cur:
        vp_cols = {row[1] async for row in cur}
    if "last_verified_by" not in vp_cols:
        await db.execute("ALTER TABLE verified_products ADD COLUMN last_verified_by TEXT")
        logger.info("Migration: added verified_products.last_verified_by")


SCHEMA = """
-- ── Spending categories (palette for analytics, vocabulary for AI) ─────────
CREATE TABLE IF NOT EXISTS categories (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    name        TEXT NOT NULL UNIQUE,
    color       TEXT NOT NULL DEFAULT 'hsl(220, 13%, 50%)',
    is_disabled INTEGER NOT NULL DEFAULT 0,        -- 1 = hidden from AI prompt
    sort_order  INTEGER NOT NULL DEFAULT 100,
    created_at  TEXT DEFAULT (datetime('now'))
);

-- Seed the built-in categories (INSERT OR IGNORE so re-runs are safe)
INSERT OR IGNORE INTO categories (name, color, sort_order) VALUES
    ('Produce',   'hsl(142, 71%, 45%)', 10),
    ('Dairy',     'hsl(197, 71%, 73%)', 20),
    ('Meats',     'hsl(0, 84%, 60%)',   30),
    ('Bakery',    'hsl(38, 92%, 50%)',  40),
    ('Beverages', 'hsl(280, 89%, 60%)', 50),
    ('Frozen',    'hsl(200, 80%, 50%)', 60),
    ('Pantry',    'hsl(25, 95%, 53%)',  70),
    ('Household', 'hsl(270, 60%, 50%)', 80),
    ('Deli',      'hsl(340, 80%, 55%)', 90),
    ('Dips',      'hsl(160, 60%, 45%)', 95),
    ('Other',     'hsl(220, 13%, 50%)', 99);

-- Approved receipts (nothing is written before the user approves)
CREATE TABLE IF NOT EXISTS receipts (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         TEXT NOT NULL,
    store_name      TEXT NOT NULL,
    store_chain     TEXT NOT NULL,         -- canonical chain key
    store_address   TEXT,
    store_phone     TEXT,
    receipt_date    TEXT,                  -- ISO date, user-confirmed
    receipt_number  TEXT,
    subtotal_amount REAL,
    tax_amount      REAL,
    discount_amount REAL DEFAULT 0,
    total_amount    REAL,
    payment_method  TEXT,
    card_last_four  TEXT,
    ocr_text        TEXT,
    created_at      TEXT DEFAULT (datetime('now')),
    updated_at      TEXT DEFAULT (datetime('now'))
);

-- Individual line items on a receipt
CREATE TABLE IF NOT EXISTS receipt_items (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    receipt_id      INTEGER NOT NULL REFERENCES receipts(id) ON DELETE CASCADE,
    line_number     INTEGER,
    item_name       TEXT NOT NULL,
    product_code    TEXT,
    brand           TEXT,
    size            TEXT,
    category        TEXT,
    quantity        REAL DEFAULT 1,
    unit_price      REAL,
    total_price     REAL,
    discount_amount REAL,
    tax_code        TEXT,
    is_discount     INTEGER NOT NULL DEFAULT 0,
    confidence      TEXT NOT NULL DEFAULT 'ocr', -- ocr | verified | ai_suggested | fallback
    created_at      TEXT DEFAULT (datetime('now'))
);

-- Human-confirmed product records (the "memory" of the system)
CREATE TABLE IF NOT EXISTS verified_products (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    product_code        TEXT NOT NULL,
    store_chain         TEXT NOT NULL,
    product_name        TEXT NOT NULL,
    brand               TEXT,
    size                TEXT,
    category            TEXT,
    verification_count  INTEGER NOT NULL DEFAULT 1,
    last_verified_at    TEXT DEFAULT (datetime('now')),
    last_verified_by    TEXT,
    created_at          TEXT DEFAULT (datetime('now')),
    UNIQUE(product_code, store_chain)
);

CREATE INDEX IF NOT EXISTS idx_receipt_items_receipt ON receipt_items(receipt_id);
"""
