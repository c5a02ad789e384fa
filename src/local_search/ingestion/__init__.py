"""
Ingestion: reading, downloading, chunking and embedding documents, and
watching a folder for changes.

The stage functions that tie these together live in
:mod:`local_search.pipelines`.
"""
