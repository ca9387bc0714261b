# SPDX-License-Identifier: MIT
# SQL schema definitions

# Embedded SQL schemas for reliable packaging
FIRMWARE_SCHEMA = """
-- Firmware artifacts and their cached digests
CREATE TABLE IF NOT EXISTS firmware (
  id            INTEGER PRIMARY KEY,
  name          TEXT NOT NULL UNIQUE,
  version       TEXT NOT NULL,
  size_bytes    INTEGER NOT NULL CHECK (size_bytes >= 0),
  md5           TEXT NOT NULL CHECK (length(md5) = 32),
  sha256        TEXT NOT NULL CHECK (length(sha256) = 64),
  storage_ref   TEXT NOT NULL,
  modified_at   REAL NOT NULL,
  created_at    TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ','now')),
  updated_at    TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ','now')),

  -- 3 parts: MAJOR.MINOR.PATCH
  CHECK ((length(version) - length(replace(version, '.', ''))) = 2)
);

CREATE INDEX IF NOT EXISTS idx_firmware_version
ON firmware(version);

CREATE INDEX IF NOT EXISTS idx_firmware_modified
ON firmware(modified_at DESC);

CREATE TRIGGER IF NOT EXISTS trg_firmware_updated_at
AFTER UPDATE ON firmware
FOR EACH ROW
BEGIN
  UPDATE firmware SET updated_at = strftime('%Y-%m-%dT%H:%M:%SZ','now') WHERE id = OLD.id;
END;
"""

TRANSFER_LOG_SCHEMA = """
-- One row per transfer session
CREATE TABLE IF NOT EXISTS transfer_log (
  id             INTEGER PRIMARY KEY,
  session_id     TEXT NOT NULL UNIQUE,
  device_id      TEXT NOT NULL,
  version        TEXT NOT NULL,
  size_bytes     INTEGER NOT NULL DEFAULT 0,
  last_offset    INTEGER NOT NULL DEFAULT 0,
  status         TEXT NOT NULL DEFAULT 'in_progress'
                    CHECK (status IN ('in_progress','interrupted','ok','failed','evicted')),
  created_at     TEXT NOT NULL,
  updated_at     TEXT NOT NULL,
  completed_at   TEXT
);

CREATE INDEX IF NOT EXISTS idx_transfer_log__device_created
ON transfer_log (device_id, created_at DESC);

CREATE INDEX IF NOT EXISTS idx_transfer_log__status
ON transfer_log (status);
"""
