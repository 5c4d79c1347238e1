from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Iterable

from .errors import RecordNotFoundError
from .models import (
    CanonicalListing,
    Company,
    CompanySource,
    Salary,
    ScrapeRun,
    SourceSighting,
)
from .utils import extract_domain, from_iso, json_dumps, to_iso, utc_now, utc_now_iso


def connect(db_path: Path | str) -> sqlite3.Connection:
    if str(db_path) != ":memory:":
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS company (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            website TEXT NOT NULL DEFAULT '',
            original_website TEXT NOT NULL DEFAULT '',
            domain TEXT NOT NULL DEFAULT '',
            original_domain TEXT NOT NULL DEFAULT '',
            location TEXT NOT NULL DEFAULT '',
            industry TEXT NOT NULL DEFAULT '',
            description TEXT NOT NULL DEFAULT '',
            aliases_json TEXT NOT NULL DEFAULT '[]',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_company_domain ON company(domain);
        CREATE INDEX IF NOT EXISTS idx_company_original_domain ON company(original_domain);

        CREATE TABLE IF NOT EXISTS vacancy (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            title TEXT NOT NULL,
            company_id INTEGER REFERENCES company(id),
            company_name TEXT NOT NULL DEFAULT '',
            location TEXT NOT NULL DEFAULT '',
            work_model TEXT NOT NULL DEFAULT 'unknown',
            technologies_json TEXT NOT NULL DEFAULT '[]',
            salary_min INTEGER,
            salary_max INTEGER,
            salary_currency TEXT,
            experience_level TEXT,
            posted_at TEXT,
            description TEXT NOT NULL DEFAULT '',
            status TEXT NOT NULL DEFAULT 'active',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_vacancy_created ON vacancy(created_at);

        CREATE TABLE IF NOT EXISTS vacancy_source (
            vacancy_id INTEGER NOT NULL REFERENCES vacancy(id) ON DELETE CASCADE,
            source_site TEXT NOT NULL,
            native_id TEXT NOT NULL DEFAULT '',
            url TEXT NOT NULL DEFAULT '',
            last_seen_at TEXT NOT NULL,
            PRIMARY KEY (vacancy_id, source_site)
        );

        CREATE INDEX IF NOT EXISTS idx_vacancy_source_url ON vacancy_source(url);
        CREATE INDEX IF NOT EXISTS idx_vacancy_source_native ON vacancy_source(source_site, native_id);

        CREATE TABLE IF NOT EXISTS company_source (
            company_id INTEGER NOT NULL,
            source_site TEXT NOT NULL,
            source_url TEXT NOT NULL,
            last_scraped_at TEXT NOT NULL,
            is_valid INTEGER NOT NULL DEFAULT 1,
            content_hash TEXT,
            raw_content TEXT,
            invalid_reason TEXT,
            PRIMARY KEY (company_id, source_site)
        );

        CREATE TABLE IF NOT EXISTS run_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_type TEXT NOT NULL,
            started_at TEXT NOT NULL,
            finished_at TEXT,
            ok INTEGER,
            stats_json TEXT
        );
        """
    )
    conn.commit()


def start_run(conn: sqlite3.Connection, run_type: str) -> int:
    cur = conn.execute(
        "INSERT INTO run_history (run_type, started_at, ok) VALUES (?, ?, NULL)",
        (run_type, utc_now_iso()),
    )
    conn.commit()
    return int(cur.lastrowid)


def finish_run(conn: sqlite3.Connection, run_id: int, ok: bool, stats: dict) -> None:
    conn.execute(
        "UPDATE run_history SET finished_at = ?, ok = ?, stats_json = ? WHERE id = ?",
        (utc_now_iso(), 1 if ok else 0, json_dumps(stats), run_id),
    )
    conn.commit()


def recent_runs(conn: sqlite3.Connection, limit: int = 20) -> list[ScrapeRun]:
    rows = conn.execute(
        "SELECT * FROM run_history ORDER BY id DESC LIMIT ?",
        (limit,),
    ).fetchall()
    return [
        ScrapeRun(
            id=int(row["id"]),
            run_type=row["run_type"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            ok=None if row["ok"] is None else bool(row["ok"]),
            stats=json.loads(row["stats_json"] or "{}"),
        )
        for row in rows
    ]


def _opt_iso(value: datetime | None) -> str | None:
    return to_iso(value) if value is not None else None


class Repository:
    """Persistence for vacancies, companies and cached company sources."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    @classmethod
    def open(cls, db_path: Path | str) -> "Repository":
        conn = connect(db_path)
        init_db(conn)
        return cls(conn)

    def close(self) -> None:
        self.conn.close()

    # -- vacancies ---------------------------------------------------------

    def _sightings(self, vacancy_id: int) -> dict[str, SourceSighting]:
        rows = self.conn.execute(
            "SELECT source_site, native_id, url, last_seen_at FROM vacancy_source WHERE vacancy_id = ?",
            (vacancy_id,),
        ).fetchall()
        return {
            row["source_site"]: SourceSighting(
                last_seen_at=from_iso(row["last_seen_at"]),
                url=row["url"],
                native_id=row["native_id"],
            )
            for row in rows
        }

    def _listing_from_row(self, row: sqlite3.Row) -> CanonicalListing:
        return CanonicalListing(
            id=int(row["id"]),
            title=row["title"],
            company_name=row["company_name"],
            company_id=row["company_id"],
            location=row["location"],
            work_model=row["work_model"],
            technologies=json.loads(row["technologies_json"] or "[]"),
            salary=Salary(
                min=row["salary_min"],
                max=row["salary_max"],
                currency=row["salary_currency"],
            ),
            experience_level=row["experience_level"],
            posted_at=from_iso(row["posted_at"]),
            description=row["description"],
            status=row["status"],
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
            scraped_sites=self._sightings(int(row["id"])),
        )

    def get_listing(self, listing_id: int) -> CanonicalListing | None:
        row = self.conn.execute("SELECT * FROM vacancy WHERE id = ?", (listing_id,)).fetchone()
        return self._listing_from_row(row) if row else None

    def find_listing_by_url(self, url: str) -> CanonicalListing | None:
        row = self.conn.execute(
            """
            SELECT v.* FROM vacancy v
            JOIN vacancy_source s ON s.vacancy_id = v.id
            WHERE s.url = ?
            LIMIT 1
            """,
            (url,),
        ).fetchone()
        return self._listing_from_row(row) if row else None

    def find_listing_by_external_id(self, source_site: str, native_id: str) -> CanonicalListing | None:
        if not native_id:
            return None
        row = self.conn.execute(
            """
            SELECT v.* FROM vacancy v
            JOIN vacancy_source s ON s.vacancy_id = v.id
            WHERE s.source_site = ? AND s.native_id = ?
            LIMIT 1
            """,
            (source_site, native_id),
        ).fetchone()
        return self._listing_from_row(row) if row else None

    def find_listings_by_company_name(self, fragment: str, since: datetime, limit: int) -> list[CanonicalListing]:
        rows = self.conn.execute(
            """
            SELECT * FROM vacancy
            WHERE company_name LIKE ? AND created_at >= ?
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (f"%{fragment}%", to_iso(since), limit),
        ).fetchall()
        return [self._listing_from_row(row) for row in rows]

    def find_listings_by_title_word(self, word: str, since: datetime, limit: int) -> list[CanonicalListing]:
        rows = self.conn.execute(
            """
            SELECT * FROM vacancy
            WHERE title LIKE ? AND created_at >= ?
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (f"%{word}%", to_iso(since), limit),
        ).fetchall()
        return [self._listing_from_row(row) for row in rows]

    def insert_listing(self, listing: CanonicalListing, now: datetime | None = None) -> int:
        stamp = to_iso(now or utc_now())
        cur = self.conn.execute(
            """
            INSERT INTO vacancy (
                title, company_id, company_name, location, work_model, technologies_json,
                salary_min, salary_max, salary_currency, experience_level, posted_at,
                description, status, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                listing.title,
                listing.company_id,
                listing.company_name,
                listing.location,
                listing.work_model,
                json.dumps(listing.technologies),
                listing.salary.min,
                listing.salary.max,
                listing.salary.currency,
                listing.experience_level,
                _opt_iso(listing.posted_at),
                listing.description,
                listing.status,
                stamp,
                stamp,
            ),
        )
        listing.id = int(cur.lastrowid)
        listing.created_at = listing.updated_at = from_iso(stamp)
        self._upsert_sightings(listing.id, listing.scraped_sites)
        self.conn.commit()
        return listing.id

    def update_listing(self, listing: CanonicalListing, now: datetime | None = None) -> None:
        if listing.id is None:
            raise RecordNotFoundError("vacancy", "None")
        stamp = to_iso(now or utc_now())
        cur = self.conn.execute(
            """
            UPDATE vacancy
            SET title = ?, company_id = ?, company_name = ?, location = ?, work_model = ?,
                technologies_json = ?, salary_min = ?, salary_max = ?, salary_currency = ?,
                experience_level = ?, posted_at = ?, description = ?, status = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                listing.title,
                listing.company_id,
                listing.company_name,
                listing.location,
                listing.work_model,
                json.dumps(listing.technologies),
                listing.salary.min,
                listing.salary.max,
                listing.salary.currency,
                listing.experience_level,
                _opt_iso(listing.posted_at),
                listing.description,
                listing.status,
                stamp,
                listing.id,
            ),
        )
        if cur.rowcount == 0:
            self.conn.rollback()
            raise RecordNotFoundError("vacancy", str(listing.id))
        self._upsert_sightings(listing.id, listing.scraped_sites)
        self.conn.commit()
        listing.updated_at = from_iso(stamp)

    def _upsert_sightings(self, vacancy_id: int, sightings: dict[str, SourceSighting]) -> None:
        # Upsert only; rows for sites missing from the mapping are left alone.
        for site, sighting in sightings.items():
            self.conn.execute(
                """
                INSERT INTO vacancy_source (vacancy_id, source_site, native_id, url, last_seen_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(vacancy_id, source_site) DO UPDATE SET
                    native_id = excluded.native_id,
                    url = excluded.url,
                    last_seen_at = excluded.last_seen_at
                """,
                (vacancy_id, site, sighting.native_id, sighting.url, to_iso(sighting.last_seen_at)),
            )

    def count_listings(self) -> int:
        return int(self.conn.execute("SELECT COUNT(*) FROM vacancy").fetchone()[0])

    # -- companies ---------------------------------------------------------

    def _company_from_row(self, row: sqlite3.Row) -> Company:
        return Company(
            id=int(row["id"]),
            name=row["name"],
            website=row["website"],
            original_website=row["original_website"],
            location=row["location"],
            industry=row["industry"],
            description=row["description"],
            aliases=json.loads(row["aliases_json"] or "[]"),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )

    def get_company(self, company_id: int) -> Company | None:
        row = self.conn.execute("SELECT * FROM company WHERE id = ?", (company_id,)).fetchone()
        return self._company_from_row(row) if row else None

    def find_company_by_domain(self, domain: str) -> Company | None:
        if not domain:
            return None
        row = self.conn.execute(
            """
            SELECT * FROM company
            WHERE domain = ? OR original_domain = ?
            ORDER BY CASE WHEN domain = ? THEN 0 ELSE 1 END, id
            LIMIT 1
            """,
            (domain, domain, domain),
        ).fetchone()
        return self._company_from_row(row) if row else None

    def find_company_by_name(self, name: str) -> Company | None:
        row = self.conn.execute(
            "SELECT * FROM company WHERE lower(name) = lower(?) ORDER BY id LIMIT 1",
            (name.strip(),),
        ).fetchone()
        return self._company_from_row(row) if row else None

    def find_company_by_alias(self, name: str) -> Company | None:
        wanted = name.strip()
        if not wanted:
            return None
        rows = self.conn.execute(
            "SELECT * FROM company WHERE aliases_json LIKE ? ORDER BY id",
            (f"%{wanted}%",),
        ).fetchall()
        for row in rows:
            company = self._company_from_row(row)
            if company.has_alias(wanted):
                return company
        return None

    def find_company_candidates(self, words: Iterable[str], domain: str, limit: int = 50) -> list[Company]:
        clauses: list[str] = []
        params: list[str] = []
        for word in words:
            clauses.append("name LIKE ?")
            params.append(f"%{word}%")
            clauses.append("aliases_json LIKE ?")
            params.append(f"%{word}%")
        if domain:
            clauses.append("domain = ?")
            params.append(domain)
            clauses.append("original_domain = ?")
            params.append(domain)
        if not clauses:
            return []
        rows = self.conn.execute(
            f"SELECT * FROM company WHERE {' OR '.join(clauses)} ORDER BY id LIMIT ?",
            (*params, limit),
        ).fetchall()
        return [self._company_from_row(row) for row in rows]

    def insert_company(self, company: Company, now: datetime | None = None) -> int:
        stamp = to_iso(now or utc_now())
        cur = self.conn.execute(
            """
            INSERT INTO company (
                name, website, original_website, domain, original_domain,
                location, industry, description, aliases_json, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                company.name,
                company.website,
                company.original_website,
                extract_domain(company.website),
                extract_domain(company.original_website),
                company.location,
                company.industry,
                company.description,
                json.dumps(company.aliases, ensure_ascii=False),
                stamp,
                stamp,
            ),
        )
        self.conn.commit()
        company.id = int(cur.lastrowid)
        company.created_at = company.updated_at = from_iso(stamp)
        return company.id

    def update_company(self, company: Company, now: datetime | None = None) -> None:
        if company.id is None:
            raise RecordNotFoundError("company", "None")
        stamp = to_iso(now or utc_now())
        cur = self.conn.execute(
            """
            UPDATE company
            SET name = ?, website = ?, original_website = ?, domain = ?, original_domain = ?,
                location = ?, industry = ?, description = ?, aliases_json = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                company.name,
                company.website,
                company.original_website,
                extract_domain(company.website),
                extract_domain(company.original_website),
                company.location,
                company.industry,
                company.description,
                json.dumps(company.aliases, ensure_ascii=False),
                stamp,
                company.id,
            ),
        )
        if cur.rowcount == 0:
            self.conn.rollback()
            raise RecordNotFoundError("company", str(company.id))
        self.conn.commit()
        company.updated_at = from_iso(stamp)

    def count_companies(self) -> int:
        return int(self.conn.execute("SELECT COUNT(*) FROM company").fetchone()[0])

    # -- company sources ---------------------------------------------------

    @staticmethod
    def _source_from_row(row: sqlite3.Row) -> CompanySource:
        return CompanySource(
            company_id=int(row["company_id"]),
            source_site=row["source_site"],
            source_url=row["source_url"],
            last_scraped_at=from_iso(row["last_scraped_at"]),
            is_valid=bool(row["is_valid"]),
            content_hash=row["content_hash"],
            raw_content=row["raw_content"],
            invalid_reason=row["invalid_reason"],
        )

    def get_company_source(self, company_id: int, source_site: str) -> CompanySource | None:
        row = self.conn.execute(
            "SELECT * FROM company_source WHERE company_id = ? AND source_site = ?",
            (company_id, source_site),
        ).fetchone()
        return self._source_from_row(row) if row else None

    def list_company_sources(self, company_id: int) -> list[CompanySource]:
        rows = self.conn.execute(
            "SELECT * FROM company_source WHERE company_id = ? ORDER BY last_scraped_at DESC",
            (company_id,),
        ).fetchall()
        return [self._source_from_row(row) for row in rows]

    def upsert_company_source(self, source: CompanySource) -> None:
        self.conn.execute(
            """
            INSERT INTO company_source (
                company_id, source_site, source_url, last_scraped_at,
                is_valid, content_hash, raw_content, invalid_reason
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(company_id, source_site) DO UPDATE SET
                source_url = excluded.source_url,
                last_scraped_at = excluded.last_scraped_at,
                is_valid = excluded.is_valid,
                content_hash = excluded.content_hash,
                raw_content = excluded.raw_content,
                invalid_reason = excluded.invalid_reason
            """,
            (
                source.company_id,
                source.source_site,
                source.source_url,
                to_iso(source.last_scraped_at),
                1 if source.is_valid else 0,
                source.content_hash,
                source.raw_content,
                source.invalid_reason,
            ),
        )
        self.conn.commit()

    def mark_company_source_invalid(self, company_id: int, source_site: str, reason: str | None) -> bool:
        cur = self.conn.execute(
            """
            UPDATE company_source
            SET is_valid = 0, invalid_reason = ?
            WHERE company_id = ? AND source_site = ?
            """,
            (reason, company_id, source_site),
        )
        self.conn.commit()
        return cur.rowcount > 0

    def delete_company_sources(self, older_than: datetime) -> int:
        cur = self.conn.execute(
            "DELETE FROM company_source WHERE is_valid = 0 OR last_scraped_at < ?",
            (to_iso(older_than),),
        )
        self.conn.commit()
        return int(cur.rowcount)

    def company_source_stats(self) -> dict:
        row = self.conn.execute(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(CASE WHEN is_valid = 1 THEN 1 ELSE 0 END), 0) AS valid,
                   COALESCE(SUM(CASE WHEN is_valid = 0 THEN 1 ELSE 0 END), 0) AS invalid,
                   MIN(last_scraped_at) AS oldest,
                   MAX(last_scraped_at) AS newest
            FROM company_source
            """
        ).fetchone()
        by_site = {
            r["source_site"]: int(r["n"])
            for r in self.conn.execute(
                "SELECT source_site, COUNT(*) AS n FROM company_source GROUP BY source_site"
            ).fetchall()
        }
        return {
            "total": int(row["total"]),
            "valid": int(row["valid"]),
            "invalid": int(row["invalid"]),
            "oldest": row["oldest"],
            "newest": row["newest"],
            "by_site": by_site,
        }
