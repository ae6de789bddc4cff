"""Static catalog of metered operations: cost, entitlement class, usage ceiling."""

from dataclasses import dataclass

from app.core.config import Settings, get_settings

API_CALLS_LIMIT = "api_calls"

WELCOME = "swaroop-welcome"
DOCUMENT_IDENTIFICATION = "document-identification"
PAN_SIGNATURE_EXTRACTION = "pan-signature-extraction"


@dataclass(frozen=True)
class OperationSpec:
    id: str
    title: str
    description: str
    category: str
    cost: int
    entitlement_free: bool = False
    usage_ceiling: int | None = None
    requires_upload: bool = False
    upstream_path: str | None = None  # None: handled in-process
    binary_response: bool = False
    method: str = "POST"
    version: str = "1.0.0"
    status: str = "active"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "method": self.method,
            "version": self.version,
            "status": self.status,
            "pricing": {"credits": self.cost},
            "entitlement_free": self.entitlement_free,
            "usage_ceiling": self.usage_ceiling,
            "requires_upload": self.requires_upload,
        }


class OperationCatalog:
    def __init__(self, operations: list[OperationSpec], default_cost: int = 1) -> None:
        self._operations = {op.id: op for op in operations}
        self.default_cost = default_cost

    def get(self, operation: str) -> OperationSpec | None:
        return self._operations.get(operation)

    def cost_of(self, operation: str) -> int:
        op = self._operations.get(operation)
        return op.cost if op else self.default_cost

    def is_entitlement_free(self, operation: str) -> bool:
        op = self._operations.get(operation)
        return bool(op and op.entitlement_free)

    def ceilings_for(self, operation: str) -> dict[str, int | None]:
        op = self._operations.get(operation)
        return {API_CALLS_LIMIT: op.usage_ceiling if op else None}

    def all(self) -> list[OperationSpec]:
        return list(self._operations.values())


def build_catalog(settings: Settings | None = None) -> OperationCatalog:
    s = settings or get_settings()
    ceiling = s.api_calls_ceiling or None
    return OperationCatalog(
        [
            OperationSpec(
                id=WELCOME,
                title="Welcome API",
                description="Trial API that returns a welcome message. Used for testing integration, authentication and the credit system.",
                category="trial",
                cost=s.credits_per_welcome,
                entitlement_free=True,
            ),
            OperationSpec(
                id=DOCUMENT_IDENTIFICATION,
                title="Document Identification",
                description="Identifies the type of card, its side, and determines if the image is blurry or grayscale.",
                category="id_card",
                cost=s.credits_per_document_identification,
                usage_ceiling=ceiling,
                requires_upload=True,
                upstream_path="/document-identification",
            ),
            OperationSpec(
                id=PAN_SIGNATURE_EXTRACTION,
                title="PAN Signature Extraction",
                description="Extracts the signature of the person from PAN card images.",
                category="id_card",
                cost=s.credits_per_pan_signature_extraction,
                usage_ceiling=ceiling,
                requires_upload=True,
                upstream_path="/pan-signature-extraction",
                binary_response=True,
            ),
        ],
        default_cost=s.default_operation_cost,
    )
