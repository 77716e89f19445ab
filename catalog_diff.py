from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from catalog_parser import STATUS_ATIVO, STATUS_INATIVO, VehicleRecord, compute_content_hash
from vehicle_store import CATALOG_COLLECTION, DocumentStore, load_catalog, save_vehicles

Catalog = Dict[str, VehicleRecord]


@dataclass
class ChangedVehicle:
    id: str
    before: VehicleRecord
    after: VehicleRecord

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "before": self.before.to_dict(), "after": self.after.to_dict()}


@dataclass
class CatalogDiff:
    """Classificação entre o catálogo salvo e o catálogo recém-lido"""
    added: List[VehicleRecord] = field(default_factory=list)
    removed: List[VehicleRecord] = field(default_factory=list)
    changed: List[ChangedVehicle] = field(default_factory=list)
    totals: Dict[str, int] = field(default_factory=lambda: {"cur": 0, "next": 0})

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.changed)

    def summary(self) -> Dict[str, int]:
        return {
            "added": len(self.added),
            "changed": len(self.changed),
            "inactivated": len(self.removed),
        }

    def to_dict(self, limit: Optional[int] = None) -> Dict[str, Any]:
        """Formato da resposta de validação; limit corta as listas, não os totais"""
        def cortar(items: List[Any]) -> List[Any]:
            return items if limit is None else items[:limit]

        return {
            "added": [record.to_dict() for record in cortar(self.added)],
            "removed": [record.to_dict() for record in cortar(self.removed)],
            "changed": [item.to_dict() for item in cortar(self.changed)],
            "totals": dict(self.totals),
        }


def ordenar_ids(ids: Iterable[str]) -> List[str]:
    # Ids são só dígitos: comprimento primeiro dá ordem numérica
    return sorted(ids, key=lambda car_id: (len(car_id), car_id))


def _hash(record: VehicleRecord) -> str:
    return record.content_hash or compute_content_hash(record)


def diff_catalog(current: Catalog, next_catalog: Catalog) -> CatalogDiff:
    """
    Compara dois catálogos sem efeitos colaterais.

    - added: ids só no catálogo novo
    - removed: ids só no catálogo atual
    - changed: ids nos dois com hash diferente (hash igual fica de fora)

    As listas saem em ordem numérica crescente de carId.
    """
    cur_ids = set(current)
    next_ids = set(next_catalog)

    added = [next_catalog[car_id] for car_id in ordenar_ids(next_ids - cur_ids)]
    removed = [current[car_id] for car_id in ordenar_ids(cur_ids - next_ids)]
    changed = [
        ChangedVehicle(id=car_id, before=current[car_id], after=next_catalog[car_id])
        for car_id in ordenar_ids(cur_ids & next_ids)
        if _hash(current[car_id]) != _hash(next_catalog[car_id])
    ]

    diff = CatalogDiff(
        added=added,
        removed=removed,
        changed=changed,
        totals={"cur": len(cur_ids), "next": len(next_ids)},
    )
    print(f"[INFO] Diff do catálogo: {diff.summary()} (atual={len(cur_ids)}, novo={len(next_ids)})")
    return diff


def apply_catalog_diff(
    store: DocumentStore,
    diff: CatalogDiff,
    now: Optional[datetime] = None,
    collection: str = CATALOG_COLLECTION,
) -> Dict[str, int]:
    """
    Grava o diff no armazenamento.

    Adicionados e alterados ficam ativos; removidos são inativados mantendo os
    demais campos salvos (nunca apagados). Registro cujo hash salvo já é igual
    ao que seria gravado não é reescrito, então aplicar o mesmo diff de novo
    não muda nada. Não há rollback: o que já foi gravado permanece.
    """
    timestamp = (now or datetime.now()).isoformat()
    armazenados = load_catalog(store, collection)
    pendentes: Dict[str, VehicleRecord] = {}

    def agendar(record: VehicleRecord) -> None:
        atual = armazenados.get(record.car_id)
        if atual is not None and atual.content_hash == record.content_hash:
            return
        pendentes[record.car_id] = replace(record, updated_at=timestamp)

    for record in [*diff.added, *(item.after for item in diff.changed)]:
        agendar(record.with_status(STATUS_ATIVO))

    for record in diff.removed:
        base = armazenados.get(record.car_id, record)
        agendar(base.with_status(STATUS_INATIVO))

    gravados = save_vehicles(store, pendentes.values(), collection)
    summary = diff.summary()
    print(f"[OK] Catálogo aplicado: {summary}, {gravados} registro(s) gravado(s)")
    return summary
