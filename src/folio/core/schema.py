"""PostgreSQL + pgvector schema for documents, jobs, committed and staged chunks."""

from typing import List


def schema_statements(dimensions: int = 1536) -> List[str]:
    """DDL statements, in order, for a corpus with ``dimensions``-sized vectors."""
    return [
        "CREATE EXTENSION IF NOT EXISTS vector",
        """
        CREATE TABLE IF NOT EXISTS documents (
            id UUID PRIMARY KEY,
            title VARCHAR(500) NOT NULL CHECK (length(trim(title)) > 0),
            topic TEXT NOT NULL,
            initiator TEXT,
            status VARCHAR(20) NOT NULL
                CHECK (status IN ('pending', 'processing', 'complete', 'failed')),
            error_detail TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_documents_status ON documents(status)",
        "CREATE INDEX IF NOT EXISTS idx_documents_created_at ON documents(created_at)",
        """
        CREATE TABLE IF NOT EXISTS ingestion_jobs (
            id UUID PRIMARY KEY,
            document_id UUID NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
            total_workers INTEGER NOT NULL CHECK (total_workers > 0),
            completed_workers INTEGER NOT NULL DEFAULT 0,
            status VARCHAR(20) NOT NULL DEFAULT 'processing'
                CHECK (status IN ('processing', 'committing', 'complete', 'failed')),
            error_detail TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_jobs_document_id ON ingestion_jobs(document_id)",
        "CREATE INDEX IF NOT EXISTS idx_jobs_status ON ingestion_jobs(status)",
        f"""
        CREATE TABLE IF NOT EXISTS document_chunks (
            id UUID PRIMARY KEY,
            document_id UUID NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
            topic TEXT NOT NULL,
            text TEXT NOT NULL CHECK (length(trim(text)) > 0),
            embedding vector({dimensions}) NOT NULL,
            page_number INTEGER NOT NULL CHECK (page_number > 0),
            chunk_index INTEGER NOT NULL,
            title VARCHAR(500) NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_chunks_embedding ON document_chunks "
        "USING hnsw (embedding vector_cosine_ops)",
        "CREATE INDEX IF NOT EXISTS idx_chunks_document_id ON document_chunks(document_id)",
        "CREATE INDEX IF NOT EXISTS idx_chunks_topic ON document_chunks(topic)",
        f"""
        CREATE TABLE IF NOT EXISTS document_chunks_staging (
            id UUID PRIMARY KEY,
            job_id UUID NOT NULL REFERENCES ingestion_jobs(id) ON DELETE CASCADE,
            document_id UUID NOT NULL,
            topic TEXT NOT NULL,
            text TEXT NOT NULL CHECK (length(trim(text)) > 0),
            embedding vector({dimensions}) NOT NULL,
            page_number INTEGER NOT NULL CHECK (page_number > 0),
            chunk_index INTEGER NOT NULL,
            title VARCHAR(500) NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_staging_job_id ON document_chunks_staging(job_id)",
        "CREATE INDEX IF NOT EXISTS idx_staging_document_id ON document_chunks_staging(document_id)",
    ]


DROP_STATEMENTS = [
    "DROP TABLE IF EXISTS document_chunks_staging",
    "DROP TABLE IF EXISTS document_chunks",
    "DROP TABLE IF EXISTS ingestion_jobs",
    "DROP TABLE IF EXISTS documents",
]
