"""Chunked file sharing for tempshare.

Clients upload a file as an ordered series of chunks, then finalize it and
hand out a share link. Anyone holding the link's token can download the
reassembled file until it expires.

Upload flow:
    POST /api/upload?action=initialize  -> fileId, token, downloadUrl
    POST /api/upload?action=append      -> chunks 0..N-1, strictly in order
    POST /api/upload?action=complete    -> status "uploaded"

Sessions that pass their absolute TTL or sit idle past the inactivity
window are purged the next time they are touched. Chunk data lives in a
best-effort cache; if any chunk has been evicted the file is reported as
gone rather than served partially.
"""
