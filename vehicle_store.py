import json
import os
import tempfile
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from catalog_parser import STATUS_ATIVO, VehicleRecord, somente_digitos

# =================== CONFIGURAÇÕES GLOBAIS =======================

DATA_DIR = os.environ.get("DATA_DIR", "data")
CATALOG_COLLECTION = os.environ.get("CATALOG_COLLECTION", "vehicleParameters")


class StorageError(Exception):
    """Falha de leitura ou gravação no armazenamento de documentos"""

# =================== ARMAZENAMENTO =======================


class DocumentStore:
    """
    Armazenamento de documentos em arquivos JSON, um arquivo por coleção:

        {"documentos": {id: {...}}, "_updated_at": "...", "_total_count": n}

    Cada gravação escreve num arquivo temporário e troca pelo definitivo,
    então um leitor nunca vê o arquivo pela metade.
    """

    def __init__(self, data_dir: str = DATA_DIR):
        self.data_dir = data_dir

    def collection_path(self, name: str) -> str:
        return os.path.join(self.data_dir, f"{name}.json")

    def load_collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        path = self.collection_path(name)
        if not os.path.exists(path):
            return {}

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            print(f"[ERRO] Erro ao ler coleção {name}: {e}")
            raise StorageError(f"Erro ao ler coleção {name}: {e}") from e

        documentos = data.get("documentos") if isinstance(data, dict) else None
        if not isinstance(documentos, dict):
            raise StorageError(f"Formato inválido em {path}: 'documentos' deve ser um objeto")
        return documentos

    def get(self, name: str, key: str) -> Optional[Dict[str, Any]]:
        return self.load_collection(name).get(key)

    def upsert(self, name: str, key: str, doc: Dict[str, Any]) -> None:
        self.upsert_many(name, {key: doc})

    def upsert_many(self, name: str, docs: Dict[str, Dict[str, Any]], merge: bool = False) -> None:
        """
        Sobrescreve (ou cria) os documentos informados, mantendo os demais.
        Com merge=True, só as chaves enviadas são trocadas em cada documento.
        """
        documentos = self.load_collection(name)
        for key, doc in docs.items():
            atual = documentos.get(key)
            if merge and isinstance(atual, dict):
                documentos[key] = {**atual, **doc}
            else:
                documentos[key] = doc
        self._write_collection(name, documentos)

    def _write_collection(self, name: str, documentos: Dict[str, Dict[str, Any]]) -> None:
        result = {
            "documentos": documentos,
            "_updated_at": datetime.now().isoformat(),
            "_total_count": len(documentos),
        }

        tmp_path = None
        try:
            os.makedirs(self.data_dir, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.data_dir, prefix=f".{name}.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(result, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self.collection_path(name))
        except OSError as e:
            if tmp_path and os.path.exists(tmp_path):
                os.remove(tmp_path)
            print(f"[ERRO] Erro ao salvar coleção {name}: {e}")
            raise StorageError(f"Erro ao salvar coleção {name}: {e}") from e

        print(f"[OK] Coleção {name} salva: {len(documentos)} documento(s)")

# =================== CATÁLOGO DE VEÍCULOS =======================


def load_catalog(store: DocumentStore, collection: str = CATALOG_COLLECTION) -> Dict[str, VehicleRecord]:
    """
    Carrega todos os veículos salvos, ativos e inativos.
    Lido do armazenamento a cada chamada, sem cache.
    """
    catalog: Dict[str, VehicleRecord] = {}
    for key, doc in store.load_collection(collection).items():
        if not isinstance(doc, dict):
            print(f"[AVISO] Documento {key} ignorado: formato inválido")
            continue
        record = VehicleRecord.from_dict(doc, car_id=key)
        if record.car_id:
            catalog[record.car_id] = record

    print(f"[INFO] Catálogo atual carregado: {len(catalog)} veículo(s)")
    return catalog


def save_vehicles(store: DocumentStore, records: Iterable[VehicleRecord], collection: str = CATALOG_COLLECTION) -> int:
    """Grava os registros por cima dos documentos salvos; chaves extras do documento são mantidas"""
    docs = {record.car_id: record.to_dict() for record in records}
    if docs:
        store.upsert_many(collection, docs, merge=True)
    return len(docs)


def get_stored_vehicle(store: DocumentStore, car_id: str, collection: str = CATALOG_COLLECTION) -> Optional[VehicleRecord]:
    """Registro salvo em qualquer status"""
    key = somente_digitos(car_id)
    if not key:
        return None
    doc = store.get(collection, key)
    if not isinstance(doc, dict):
        return None
    return VehicleRecord.from_dict(doc, car_id=key)


def get_vehicle_by_id(store: DocumentStore, car_id: str, collection: str = CATALOG_COLLECTION) -> Optional[VehicleRecord]:
    """Veículo ativo pelo número; inativos e inexistentes retornam None"""
    record = get_stored_vehicle(store, car_id, collection)
    if record is None or record.status != STATUS_ATIVO:
        return None
    return record


def list_vehicles(store: DocumentStore, include_inactive: bool = False, collection: str = CATALOG_COLLECTION) -> List[VehicleRecord]:
    catalog = load_catalog(store, collection)
    records = [catalog[car_id] for car_id in sorted(catalog, key=lambda c: (len(c), c))]
    if include_inactive:
        return records
    return [record for record in records if record.status == STATUS_ATIVO]

# =================== EXECUÇÃO PRINCIPAL =======================


def _main() -> int:
    import argparse

    from catalog_diff import apply_catalog_diff, diff_catalog
    from catalog_parser import CatalogError, parse_catalog

    parser = argparse.ArgumentParser(description="Importa uma planilha de parâmetros direto para o armazenamento.")
    parser.add_argument("arquivo", help="Caminho do arquivo XLSX ou CSV")
    parser.add_argument("--aba", default=None, help="Aba preferida")
    parser.add_argument("--data-dir", default=DATA_DIR, help="Diretório das coleções")
    args = parser.parse_args()

    try:
        with open(args.arquivo, "rb") as f:
            content = f.read()
    except OSError as e:
        print(f"[ERRO] Arquivo não encontrado: {args.arquivo} ({e})")
        return 1

    store = DocumentStore(args.data_dir)
    try:
        result = parse_catalog(content, sheet_name=args.aba, filename=args.arquivo)
        diff = diff_catalog(load_catalog(store), result.catalog)
        summary = apply_catalog_diff(store, diff)
    except (CatalogError, StorageError) as e:
        print(f"[ERRO] Erro durante a importação: {e}")
        return 1

    print(f"\n{'='*50}\nIMPORTAÇÃO CONCLUÍDA\n{'='*50}")
    print(f"Adicionados: {summary['added']}")
    print(f"Alterados: {summary['changed']}")
    print(f"Inativados: {summary['inactivated']}")
    return 0


if __name__ == "__main__":
    raise SystemExit(_main())
