# Services module
from exchange_engine.services.catalog_service import CatalogService
from exchange_engine.services.inventory_service import InventoryService
from exchange_engine.services.document_sequence_service import DocumentSequenceService
from exchange_engine.services.store_credit_service import StoreCreditService

# Exchange engine
from exchange_engine.services.return_valuator import ReturnValuator, derive_disposition
from exchange_engine.services.new_item_valuator import NewItemValuator
from exchange_engine.services.disposition_gateway import DispositionGateway
from exchange_engine.services.settlement_resolver import SettlementResolver, SettlementOutcome
from exchange_engine.services.exchange_service import ExchangeService

__all__ = [
    "CatalogService",
    "InventoryService",
    "DocumentSequenceService",
    "StoreCreditService",
    "ReturnValuator",
    "derive_disposition",
    "NewItemValuator",
    "DispositionGateway",
    "SettlementResolver",
    "SettlementOutcome",
    "ExchangeService",
]
