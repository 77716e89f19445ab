from fastapi import FastAPI, File, Form, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse
from catalog_diff import apply_catalog_diff, diff_catalog
from catalog_parser import CATALOG_SHEET, CatalogError, CatalogParseResult, parse_catalog
from vehicle_store import DATA_DIR, CATALOG_COLLECTION, DocumentStore, StorageError, get_vehicle_by_id, list_vehicles, load_catalog
import json
import os
from datetime import datetime
from typing import Dict, Optional

app = FastAPI()

# Arquivo para armazenar status da última importação
STATUS_FILE = os.environ.get("STATUS_FILE", "last_import_status.json")

# Quantos itens de cada lista a validação devolve (vazio = todos)
DIFF_PREVIEW_LIMIT = int(os.environ["DIFF_PREVIEW_LIMIT"]) if os.environ.get("DIFF_PREVIEW_LIMIT") else None

# Instância global do armazenamento
document_store = DocumentStore(DATA_DIR)


def save_update_status(success: bool, message: str = "", summary: Optional[Dict[str, int]] = None, filename: Optional[str] = None):
    """Salva o status da última importação do catálogo"""
    status = {
        "timestamp": datetime.now().isoformat(),
        "success": success,
        "message": message,
        "filename": filename,
        "summary": summary or {}
    }

    try:
        with open(STATUS_FILE, "w", encoding="utf-8") as f:
            json.dump(status, f, ensure_ascii=False, indent=2)
    except OSError as e:
        print(f"[ERRO] Erro ao salvar status: {e}")


def get_update_status() -> Dict:
    """Recupera o status da última importação"""
    try:
        if os.path.exists(STATUS_FILE):
            with open(STATUS_FILE, "r", encoding="utf-8") as f:
                return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        print(f"[ERRO] Erro ao ler status: {e}")

    return {
        "timestamp": None,
        "success": False,
        "message": "Nenhuma importação registrada",
        "filename": None,
        "summary": {}
    }


def error_response(message: str, status_code: int) -> JSONResponse:
    return JSONResponse(content={"error": message}, status_code=status_code)


async def read_catalog_upload(file: UploadFile, sheet: Optional[str]) -> CatalogParseResult:
    """Lê o arquivo enviado e monta o catálogo novo"""
    content = await file.read()
    print(f"[INFO] Arquivo recebido: {file.filename} ({len(content)} bytes)")
    return await run_in_threadpool(parse_catalog, content, sheet_name=sheet or CATALOG_SHEET, filename=file.filename)


@app.post("/api/vehicle-catalog/validate")
async def validate_catalog(file: Optional[UploadFile] = File(None), sheet: Optional[str] = Form(None)):
    """Pré-visualiza as alterações do catálogo sem gravar nada"""
    if file is None:
        return error_response("Arquivo ausente", 400)

    try:
        result = await read_catalog_upload(file, sheet)
        current = await run_in_threadpool(load_catalog, document_store)
    except CatalogError as e:
        print(f"[ERRO] Validação recusada: {e}")
        return error_response(str(e), 400)
    except StorageError as e:
        print(f"[ERRO] Falha ao carregar catálogo atual: {e}")
        return error_response("Falha ao validar: catálogo atual indisponível", 500)

    diff = await run_in_threadpool(diff_catalog, current, result.catalog)

    response_data = diff.to_dict(limit=DIFF_PREVIEW_LIMIT)
    response_data["sheet"] = result.sheet_name
    response_data["warnings"] = [warning.to_dict() for warning in result.warnings]

    return JSONResponse(content=response_data)


@app.post("/api/vehicle-catalog/commit")
async def commit_catalog(file: Optional[UploadFile] = File(None), sheet: Optional[str] = Form(None)):
    """Recalcula o diff contra o armazenamento e aplica as alterações"""
    if file is None:
        return error_response("Arquivo ausente", 400)

    try:
        result = await read_catalog_upload(file, sheet)
        current = await run_in_threadpool(load_catalog, document_store)
        diff = await run_in_threadpool(diff_catalog, current, result.catalog)
        summary = await run_in_threadpool(apply_catalog_diff, document_store, diff)
    except CatalogError as e:
        print(f"[ERRO] Publicação recusada: {e}")
        return error_response(str(e), 400)
    except StorageError as e:
        error_message = f"Erro ao gravar catálogo: {e}"
        await run_in_threadpool(save_update_status, False, error_message, filename=file.filename)
        print(f"[ERRO] {error_message}")
        return error_response("Falha ao aplicar catálogo", 500)

    await run_in_threadpool(save_update_status, True, "Catálogo atualizado com sucesso", summary, filename=file.filename)
    return JSONResponse(content={"ok": True, "summary": summary})


@app.get("/api/vehicles")
async def get_vehicles(incluir_inativos: Optional[str] = None):
    """Lista os veículos do catálogo (só ativos, a menos que incluir_inativos=1)"""
    try:
        records = await run_in_threadpool(list_vehicles, document_store, incluir_inativos == "1")
    except StorageError as e:
        return error_response(f"Erro ao carregar dados: {e}", 500)

    return JSONResponse(content={
        "resultados": [record.to_dict() for record in records],
        "total_encontrado": len(records)
    })


@app.get("/api/vehicles/{car_id}")
async def get_vehicle(car_id: str):
    """Busca um veículo ativo pelo número"""
    try:
        record = await run_in_threadpool(get_vehicle_by_id, document_store, car_id)
    except StorageError as e:
        return error_response(f"Erro ao carregar dados: {e}", 500)

    if record is None:
        return JSONResponse(content=None, status_code=404)
    return JSONResponse(content=record.to_dict())


@app.get("/list")
def list_catalog():
    """Endpoint que retorna lista em formato CSV simples: carId,chassisType"""
    try:
        records = list_vehicles(document_store)
    except StorageError as e:
        return PlainTextResponse(
            content=f"error: {str(e)}",
            status_code=500
        )

    lines = [f"{record.car_id},{record.chassis_type}" for record in records]
    return PlainTextResponse(content="\n".join(lines))


@app.get("/api/health")
def health_check():
    """Endpoint de verificação de saúde"""
    return {"status": "healthy", "timestamp": datetime.now().isoformat()}


@app.get("/api/status")
def get_status():
    """Endpoint para verificar status da última importação do catálogo"""
    status = get_update_status()

    # Informações adicionais sobre o arquivo da coleção
    catalog_path = document_store.collection_path(CATALOG_COLLECTION)
    data_file_exists = os.path.exists(catalog_path)
    data_file_size = 0
    data_file_modified = None

    if data_file_exists:
        try:
            stat = os.stat(catalog_path)
            data_file_size = stat.st_size
            data_file_modified = datetime.fromtimestamp(stat.st_mtime).isoformat()
        except OSError:
            pass

    return {
        "last_import": status,
        "data_file": {
            "path": catalog_path,
            "exists": data_file_exists,
            "size_bytes": data_file_size,
            "modified_at": data_file_modified
        },
        "current_time": datetime.now().isoformat()
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
