from fastapi import APIRouter, BackgroundTasks, Depends, File, HTTPException, UploadFile, status

from medassist.api.deps import get_services, require_user_id
from medassist.container import Services
from medassist.core.errors import EmbeddingError, ExtractionError, UnsupportedFormatError
from medassist.core.logging import get_logger
from medassist.models.documents import (
    Document,
    DocumentSectionsResponse,
    DocumentUploadResponse,
    EmbedReport,
    SectionOut,
)
from medassist.services.ingestion import IngestionService

logger = get_logger(__name__)

router = APIRouter(prefix="/v1", tags=["documents"])


async def _embed_in_background(ingestion: IngestionService, document_id: str) -> None:
    try:
        await ingestion.embed_pending_with_retry(document_id)
    except EmbeddingError as exc:
        # Sections stay null and are picked up by the next pass.
        logger.error("Document %s: background embedding gave up - %s", document_id, exc)


async def _owned_document(services: Services, document_id: str, user_id: str) -> Document:
    document = await services.store.get_document(document_id)
    if document is None or document.owner_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Document not found.",
        )
    return document


@router.post(
    "/documents",
    response_model=DocumentUploadResponse,
    status_code=status.HTTP_201_CREATED,
)
async def upload_document(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    user_id: str = Depends(require_user_id),
    services: Services = Depends(get_services),
) -> DocumentUploadResponse:
    """Upload a file, split it into sections and schedule embedding.

    Args:
        file: Document file (MD, PDF, DOC/DOCX, PPT/PPTX)
    """
    filename = file.filename or ""
    data = await file.read()
    try:
        result = await services.ingestion.upload_document(
            owner_id=user_id,
            filename=filename,
            data=data,
        )
    except UnsupportedFormatError as exc:
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=str(exc),
        ) from exc
    except ExtractionError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc

    if result.sections:
        background_tasks.add_task(_embed_in_background, services.ingestion, result.document.id)
        embedding = "scheduled"
    else:
        embedding = "not_needed"

    return DocumentUploadResponse(
        document=result.document,
        section_count=len(result.sections),
        embedding=embedding,
    )


@router.get("/documents/{document_id}", response_model=Document)
async def get_document(
    document_id: str,
    user_id: str = Depends(require_user_id),
    services: Services = Depends(get_services),
) -> Document:
    return await _owned_document(services, document_id, user_id)


@router.get("/documents/{document_id}/sections", response_model=DocumentSectionsResponse)
async def list_sections(
    document_id: str,
    user_id: str = Depends(require_user_id),
    services: Services = Depends(get_services),
) -> DocumentSectionsResponse:
    document = await _owned_document(services, document_id, user_id)
    sections = await services.store.list_sections(document_id)
    return DocumentSectionsResponse(
        document=document,
        sections=[SectionOut.from_section(section) for section in sections],
    )


@router.post("/documents/{document_id}/embed", response_model=EmbedReport)
async def embed_document(
    document_id: str,
    user_id: str = Depends(require_user_id),
    services: Services = Depends(get_services),
) -> EmbedReport:
    """Run the embedding pass for this document's sections that still lack a vector."""
    await _owned_document(services, document_id, user_id)
    try:
        return await services.ingestion.embed_pending_sections(document_id)
    except EmbeddingError as exc:
        report = exc.report.model_dump() if exc.report is not None else None
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"message": str(exc), "report": report},
        ) from exc


@router.delete("/documents/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_document(
    document_id: str,
    user_id: str = Depends(require_user_id),
    services: Services = Depends(get_services),
) -> None:
    await _owned_document(services, document_id, user_id)
    await services.ingestion.delete_document(document_id)
