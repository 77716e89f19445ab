import argparse
import csv
import hashlib
import io
import json
import math
import os
import re
import zipfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException
from unidecode import unidecode

# =================== CONFIGURAÇÕES GLOBAIS =======================

CATALOG_SHEET = os.environ.get("CATALOG_SHEET", "BASE MEDIAS")
HASH_LENGTH = 12
XLS_SIGNATURE = b"\xd0\xcf\x11\xe0"

STATUS_ATIVO = "active"
STATUS_INATIVO = "inactive"
STATUS_VALIDOS = (STATUS_ATIVO, STATUS_INATIVO)

# =================== MAPEAMENTOS DE CHASSI =======================

CHASSI_CONVENCIONAL = "CONVENCIONAL"
CHASSI_ARTICULADO = "ARTICULADO"
CHASSI_PADRAO = "PADRÃO"
CHASSI_DESCONHECIDO = "UNKNOWN"

CHASSIS_TYPES = (CHASSI_CONVENCIONAL, CHASSI_ARTICULADO, CHASSI_PADRAO, CHASSI_DESCONHECIDO)

# Chaves já normalizadas (sem acento, maiúsculas). Só busca exata.
MAPEAMENTO_CHASSI = {
    "CONVENCIONAL": CHASSI_CONVENCIONAL,
    "ARTICULADO": CHASSI_ARTICULADO,
    "PADRAO": CHASSI_PADRAO,
    "PADRON": CHASSI_PADRAO,
}

# =================== COLUNAS DA PLANILHA =======================

# Grafias aceitas por campo, na ordem de prioridade
COLUNAS = {
    "veiculo": ["VEICULO", "CARID", "CAR_ID"],
    "tipo_chassi": ["TIPO CHASSI", "CHASSIS_TYPE"],
    "amarela": ["AMARELA", "TH_YELLOW"],
    "verde": ["VERDE", "TH_GREEN"],
    "dourada": ["DOURADA", "TH_GOLD"],
    "tanque": ["CAPACIDADE TANQUE", "TANK_CAPACITY"],
}

# =================== ERROS =======================


class CatalogError(ValueError):
    """Erro de processamento que encerra a requisição sem catálogo parcial."""


class NoValidSheetError(CatalogError):
    pass


class NoValidVehiclesError(CatalogError):
    pass


class InvalidVehicleRowError(CatalogError):
    def __init__(self, message: str, line: Optional[int] = None):
        super().__init__(message)
        self.line = line

# =================== MODELOS =======================


@dataclass
class Thresholds:
    """Metas de consumo (KM/L) por faixa: amarela, verde e dourada"""
    yellow: float = 0.0
    green: float = 0.0
    gold: float = 0.0

    def in_order(self) -> bool:
        return self.yellow <= self.green <= self.gold

    def to_dict(self) -> Dict[str, float]:
        return {"yellow": self.yellow, "green": self.green, "gold": self.gold}


@dataclass
class VehicleRecord:
    """Parâmetros de consumo de um veículo da frota"""
    car_id: str
    status: str = STATUS_ATIVO
    chassis_type: str = CHASSI_DESCONHECIDO
    thresholds: Thresholds = field(default_factory=Thresholds)
    tank_capacity: Optional[float] = None
    content_hash: Optional[str] = None
    updated_at: Optional[str] = None

    def with_status(self, status: str) -> "VehicleRecord":
        """Cópia com novo status e hash recalculado"""
        record = replace(self, status=status)
        record.content_hash = compute_content_hash(record)
        return record

    def to_dict(self) -> Dict[str, Any]:
        return {
            "carId": self.car_id,
            "status": self.status,
            "chassisType": self.chassis_type,
            "thresholds": self.thresholds.to_dict(),
            "tankCapacity": self.tank_capacity,
            "contentHash": self.content_hash,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], car_id: Optional[str] = None) -> "VehicleRecord":
        """
        Reconstrói um registro salvo. O hash é sempre recalculado a partir dos
        campos, nunca copiado do documento.

        Documento sem status vale como ativo. Status desconhecido é mantido
        como veio: o veículo não aparece como ativo e a próxima importação
        regrava o status.
        """
        metas = data.get("thresholds")
        if not isinstance(metas, dict):
            metas = {}
        status = data.get("status") or STATUS_ATIVO
        if status not in STATUS_VALIDOS:
            print(f"[AVISO] Veículo {data.get('carId') or car_id}: status desconhecido '{status}'")

        record = cls(
            car_id=somente_digitos(data.get("carId") or car_id),
            status=str(status),
            chassis_type=normalize_chassis_type(data.get("chassisType")),
            thresholds=Thresholds(
                yellow=converter_numero(metas.get("yellow")) or 0.0,
                green=converter_numero(metas.get("green")) or 0.0,
                gold=converter_numero(metas.get("gold")) or 0.0,
            ),
            tank_capacity=converter_numero(data.get("tankCapacity")),
            updated_at=data.get("updatedAt"),
        )
        record.content_hash = compute_content_hash(record)
        return record


@dataclass
class ParseWarning:
    code: str
    message: str
    line: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "line": self.line}


@dataclass
class CatalogParseResult:
    """Resultado da leitura de uma planilha de parâmetros"""
    catalog: Dict[str, VehicleRecord]
    sheet_name: str
    total_rows: int
    skipped_rows: int = 0
    warnings: List[ParseWarning] = field(default_factory=list)

# =================== UTILS =======================


def normalizar_texto(texto: Any) -> str:
    """Maiúsculas, sem acento e com espaços colapsados"""
    if texto is None: return ""
    texto_norm = unidecode(str(texto)).upper()
    return re.sub(r'\s+', ' ', texto_norm).strip()


def texto_celula(valor: Any) -> str:
    if valor is None: return ""
    # Planilhas devolvem números inteiros como float (10570.0)
    if isinstance(valor, float) and valor.is_integer():
        valor = int(valor)
    return str(valor).strip()


def somente_digitos(valor: Any) -> str:
    return re.sub(r'\D', '', texto_celula(valor))


def converter_numero(valor: Any) -> Optional[float]:
    """Converte célula em float aceitando vírgula decimal; vazio ou inválido vira None"""
    if valor is None or isinstance(valor, bool): return None
    try:
        if isinstance(valor, (int, float)):
            numero = float(valor)
        else:
            valor_str = str(valor).strip().replace(',', '.')
            if not valor_str: return None
            numero = float(valor_str)
    except (ValueError, TypeError):
        return None
    return numero if math.isfinite(numero) else None


def indexar_campos(row: Dict[Any, Any]) -> Dict[str, Any]:
    return {normalizar_texto(chave): valor for chave, valor in row.items() if chave is not None}


def buscar_campo(campos: Dict[str, Any], chaves: List[str]) -> Any:
    """Retorna o valor da primeira grafia de coluna presente na linha"""
    for chave in chaves:
        chave_norm = normalizar_texto(chave)
        if chave_norm in campos:
            return campos[chave_norm]
    return None


def normalize_chassis_type(valor: Any) -> str:
    return MAPEAMENTO_CHASSI.get(normalizar_texto(texto_celula(valor)), CHASSI_DESCONHECIDO)


def compute_content_hash(record: VehicleRecord) -> str:
    """
    Impressão digital curta dos campos que importam para o catálogo.
    Serve só para detectar mudança entre importações, não para segurança.
    """
    payload = {
        "carId": record.car_id,
        "chassisType": record.chassis_type,
        "thresholds": record.thresholds.to_dict(),
        "tankCapacity": record.tank_capacity,
        "status": record.status,
    }
    texto = json.dumps(payload, ensure_ascii=False, separators=(',', ':'))
    return hashlib.md5(texto.encode("utf-8"), usedforsecurity=False).hexdigest()[:HASH_LENGTH]


def _numero_nao_negativo(valor: Any, campo: str, line: Optional[int]) -> Optional[float]:
    numero = converter_numero(valor)
    if numero is not None and numero < 0:
        raise InvalidVehicleRowError(f"Linha {line}: {campo} não pode ser negativo ({valor})", line=line)
    return numero


def normalize_row(row: Dict[Any, Any], line: Optional[int] = None) -> Optional[VehicleRecord]:
    """
    Converte uma linha crua da planilha em VehicleRecord.
    Linhas sem identificador de veículo retornam None e são descartadas.
    """
    campos = indexar_campos(row)

    car_id = somente_digitos(buscar_campo(campos, COLUNAS["veiculo"]))
    if not car_id:
        return None

    # Meta em branco vale 0
    thresholds = Thresholds(
        yellow=_numero_nao_negativo(buscar_campo(campos, COLUNAS["amarela"]), "meta amarela", line) or 0.0,
        green=_numero_nao_negativo(buscar_campo(campos, COLUNAS["verde"]), "meta verde", line) or 0.0,
        gold=_numero_nao_negativo(buscar_campo(campos, COLUNAS["dourada"]), "meta dourada", line) or 0.0,
    )

    record = VehicleRecord(
        car_id=car_id,
        status=STATUS_ATIVO,
        chassis_type=normalize_chassis_type(buscar_campo(campos, COLUNAS["tipo_chassi"])),
        thresholds=thresholds,
        tank_capacity=_numero_nao_negativo(buscar_campo(campos, COLUNAS["tanque"]), "capacidade do tanque", line),
    )
    record.content_hash = compute_content_hash(record)
    return record


def escolher_aba(nomes: List[str], preferida: Optional[str] = None) -> str:
    """Aba com o nome preferido (sem diferenciar caixa/espaços) ou a primeira"""
    if not nomes:
        raise NoValidSheetError("Planilha sem aba válida.")

    if preferida:
        alvo = preferida.strip().lower()
        for nome in nomes:
            if nome.strip().lower() == alvo:
                return nome
        print(f"[AVISO] Aba '{preferida}' não encontrada, usando a primeira: {nomes[0]}")

    return nomes[0]


def _linha_vazia(valores: Any) -> bool:
    return all(texto_celula(valor) == "" for valor in valores)

# =================== LEITORES =======================


class BaseSheetReader(ABC):
    @abstractmethod
    def can_parse(self, content: bytes, filename: str) -> bool: pass

    @abstractmethod
    def read_rows(self, content: bytes, sheet_name: Optional[str]) -> Tuple[str, List[Tuple[int, Dict[str, Any]]]]: pass

    def build_rows(self, headers: List[Any], linhas: Any) -> List[Tuple[int, Dict[str, Any]]]:
        """Monta dicionários coluna -> valor; a linha 1 é o cabeçalho"""
        cabecalhos = [texto_celula(h) for h in headers]
        rows = []
        for line, valores in enumerate(linhas, start=2):
            if _linha_vazia(valores):
                continue
            row = {}
            for idx, header in enumerate(cabecalhos):
                if not header:
                    continue
                row[header] = valores[idx] if idx < len(valores) else None
            rows.append((line, row))
        return rows


class XlsxSheetReader(BaseSheetReader):
    def can_parse(self, content: bytes, filename: str) -> bool:
        if filename.lower().endswith((".xlsx", ".xlsm")):
            return True
        return content[:4] == b"PK\x03\x04"

    def read_rows(self, content: bytes, sheet_name: Optional[str]) -> Tuple[str, List[Tuple[int, Dict[str, Any]]]]:
        try:
            workbook = openpyxl.load_workbook(io.BytesIO(content), read_only=True, data_only=True)
        except (InvalidFileException, zipfile.BadZipFile, KeyError, ValueError, OSError) as e:
            raise NoValidSheetError(f"Não foi possível ler a planilha: {e}") from e

        try:
            # Abas de gráfico não têm células
            planilhas = {ws.title: ws for ws in workbook.worksheets}
            aba = escolher_aba(list(planilhas), sheet_name)
            linhas = planilhas[aba].iter_rows(values_only=True)
            cabecalho = next(linhas, None)
            if cabecalho is None:
                return aba, []
            return aba, self.build_rows(list(cabecalho), linhas)
        finally:
            workbook.close()


class CsvSheetReader(BaseSheetReader):
    """Fallback para exportações CSV (vírgula, ponto e vírgula ou tab)"""
    sheet_label = "CSV"

    def can_parse(self, content: bytes, filename: str) -> bool:
        # .xls antigo (OLE2) não é texto
        return not content.startswith(XLS_SIGNATURE)

    def read_rows(self, content: bytes, sheet_name: Optional[str]) -> Tuple[str, List[Tuple[int, Dict[str, Any]]]]:
        try:
            texto = content.decode("utf-8-sig")
        except UnicodeDecodeError:
            # Excel brasileiro costuma exportar em cp1252
            texto = content.decode("cp1252", errors="replace")

        try:
            dialect = csv.Sniffer().sniff(texto[:4096], delimiters=",;\t")
        except csv.Error:
            dialect = csv.excel

        try:
            linhas = csv.reader(io.StringIO(texto), dialect)
            cabecalho = next(linhas, None)
            if not cabecalho:
                raise NoValidSheetError("Planilha sem aba válida.")
            return self.sheet_label, self.build_rows(cabecalho, linhas)
        except csv.Error as e:
            raise NoValidSheetError(f"Não foi possível ler o CSV: {e}") from e

# =================== SISTEMA PRINCIPAL =======================

READERS: List[BaseSheetReader] = [XlsxSheetReader(), CsvSheetReader()]


def select_reader(content: bytes, filename: str = "") -> BaseSheetReader:
    for reader in READERS:
        if reader.can_parse(content, filename):
            return reader
    raise NoValidSheetError("Formato de arquivo não reconhecido.")


def parse_catalog(content: bytes, sheet_name: Optional[str] = None, filename: Optional[str] = None) -> CatalogParseResult:
    """
    Lê a planilha enviada e monta o catálogo carId -> VehicleRecord.
    Sem sheet_name, procura a aba configurada em CATALOG_SHEET.
    """
    if not content or not content.strip():
        raise NoValidSheetError("Planilha sem aba válida.")

    reader = select_reader(content, filename or "")
    aba, linhas = reader.read_rows(content, sheet_name if sheet_name is not None else CATALOG_SHEET)
    print(f"[INFO] Aba '{aba}' lida com {reader.__class__.__name__}: {len(linhas)} linha(s) de dados")

    catalog: Dict[str, VehicleRecord] = {}
    warnings: List[ParseWarning] = []
    skipped = 0

    for line, row in linhas:
        record = normalize_row(row, line=line)
        if record is None:
            skipped += 1
            warnings.append(ParseWarning("linha_sem_veiculo", f"Linha {line} ignorada: veículo não informado", line))
            continue

        if record.car_id in catalog:
            warnings.append(ParseWarning(
                "veiculo_duplicado",
                f"Linha {line}: veículo {record.car_id} repetido, vale a última ocorrência",
                line,
            ))

        if not record.thresholds.in_order():
            warnings.append(ParseWarning(
                "metas_fora_de_ordem",
                f"Linha {line}: metas do veículo {record.car_id} fora da ordem amarela <= verde <= dourada",
                line,
            ))

        catalog[record.car_id] = record

    if not catalog:
        raise NoValidVehiclesError("Nenhum veículo válido encontrado.")

    if skipped:
        print(f"[AVISO] {skipped} linha(s) sem veículo ignorada(s)")
    print(f"[OK] {len(catalog)} veículo(s) no catálogo lido")

    return CatalogParseResult(
        catalog=catalog,
        sheet_name=aba,
        total_rows=len(linhas),
        skipped_rows=skipped,
        warnings=warnings,
    )


def parse_vehicles_from_xlsx(content: bytes, sheet_name: Optional[str] = None) -> Dict[str, VehicleRecord]:
    """Função de alto nível para ser importada por outros módulos."""
    return parse_catalog(content, sheet_name=sheet_name).catalog

# =================== EXECUÇÃO PRINCIPAL =======================


def _main() -> int:
    from catalog_diff import diff_catalog

    parser = argparse.ArgumentParser(description="Lê uma planilha de parâmetros e confere o catálogo consigo mesmo.")
    parser.add_argument("arquivo", help="Caminho do arquivo XLSX ou CSV")
    parser.add_argument("--aba", default=None, help=f"Aba preferida (padrão: {CATALOG_SHEET})")
    args = parser.parse_args()

    if not os.path.exists(args.arquivo):
        print(f"[ERRO] Arquivo não encontrado: {args.arquivo}")
        return 1

    with open(args.arquivo, "rb") as f:
        content = f.read()

    try:
        result = parse_catalog(content, sheet_name=args.aba, filename=args.arquivo)
    except CatalogError as e:
        print(f"[ERRO] {e}")
        return 1

    print(f"\n{'='*50}\nRESUMO DO PROCESSAMENTO\n{'='*50}")
    print(f"Aba: {result.sheet_name}")
    print(f"Linhas lidas: {result.total_rows}")
    print(f"Veículos carregados: {len(result.catalog)}")
    for warning in result.warnings:
        print(f"  • {warning.message}")

    print(f"\nAmostra dos primeiros 5 veículos:")
    for i, record in enumerate(list(result.catalog.values())[:5], 1):
        metas = record.thresholds
        print(f"{i}. {record.car_id} ({record.chassis_type}) - {metas.yellow}/{metas.green}/{metas.gold} - hash {record.content_hash}")

    diff = diff_catalog(result.catalog, result.catalog)
    print(f"\nDiff consigo mesmo: {diff.summary()}")
    return 0 if diff.is_empty else 1


if __name__ == "__main__":
    raise SystemExit(_main())
