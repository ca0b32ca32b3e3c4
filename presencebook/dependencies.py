from fastapi import Request

from docstore.db import DocumentStore
from presencebook.services.media import LocalBlobStore


def get_store(request: Request) -> DocumentStore:
    return request.app.state.store


def get_blob_store(request: Request) -> LocalBlobStore:
    return request.app.state.blob_store
