"""Pipeline stage functions.

Each stage takes its input plus configuration and returns a typed output;
progress is reported through a callback and persisted by the driver in
:mod:`local_search.pipelines.background`.

  acquire → LoadedDocument {file_path, text, file_size, last_modified, source}
  chunk   → list[Chunk] (no embeddings yet)
  embed   → list[Chunk] with ``embedding`` filled
  store   → number of chunks now stored for the file
"""
