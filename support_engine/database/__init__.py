"""Postgres persistence: raw asyncpg queries and the engine-facing stores."""
