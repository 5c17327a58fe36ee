"""Invoice OCR with provider failover.

This module provides the OCRService class for turning an invoice photo into
a structured InvoiceRecord. Providers are tried in priority order:
- Baidu VAT invoice OCR (structured fields for Chinese VAT invoices)
- Google Cloud Vision DOCUMENT_TEXT_DETECTION, followed by regex field
  extraction for Chinese VAT invoices and AU/NZ tax invoices

Features:
- Image normalization before upload (RGB, bounded size, JPEG)
- Full-width to half-width character normalization
- Provider status for health checks
"""

import base64
import io
import logging
import re
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel

from bizmate.core.config import settings
from bizmate.core.errors import ErrorCode, ServiceError
from bizmate.models.base import utc_now

logger = logging.getLogger(__name__)


# =============================================================================
# Data Models
# =============================================================================


class InvoiceRecord(BaseModel):
    """Structured invoice extracted by OCR.

    Attributes:
        invoice_type: e.g. 增值税专用发票, Tax Invoice
        invoice_code: Chinese VAT invoice code
        invoice_num: Invoice number
        invoice_date: Date as printed (normalised to ISO where recognised)
        total_amount: Net or gross total as recognised
        total_tax: Tax / GST amount
        amount_in_figures: Gross amount (价税合计) when the provider reports it
        seller_name: Issuer
        seller_register_num: Issuer tax / business number
        purchaser_name: Billed party
        commodity_name: Goods or services description
        invoice_region: CN, AU or NZ
        abn: Australian Business Number
        nzbn: New Zealand Business Number
        gst_number: GST registration number
        provider: OCR provider that produced the record
    """
    invoice_type: str = "未知"
    invoice_code: str = ""
    invoice_num: str = ""
    invoice_date: str = ""
    total_amount: float = 0.0
    total_tax: float = 0.0
    amount_in_figures: float = 0.0
    seller_name: str = ""
    seller_register_num: str = ""
    purchaser_name: str = ""
    commodity_name: str = ""
    invoice_region: Optional[str] = None
    abn: Optional[str] = None
    nzbn: Optional[str] = None
    gst_number: Optional[str] = None
    provider: str = ""

    @property
    def amount(self) -> float:
        return self.amount_in_figures or self.total_amount

    @property
    def is_au_nz(self) -> bool:
        return self.invoice_region in ("AU", "NZ")


# =============================================================================
# Exceptions
# =============================================================================


class OCRError(ServiceError):
    """Base exception for OCR errors."""
    error_code = ErrorCode.OCR_ALL_PROVIDERS_FAILED


class OCRProviderError(OCRError):
    """A single provider failed to recognise the image."""
    pass


class OCRProcessingError(OCRError):
    """Raised when the image cannot be decoded or converted."""
    pass


class NoOCRProviderError(OCRError):
    """No OCR provider is configured."""
    error_code = ErrorCode.OCR_NO_PROVIDER


class AllOCRProvidersFailedError(OCRError):
    """Every enabled provider failed."""

    def __init__(self, failures: List[Tuple[str, str]]):
        details = "\n".join(f"- {name}: {reason}" for name, reason in failures)
        super().__init__(f"所有OCR服务商均识别失败:\n{details}")
        self.failures = failures


# =============================================================================
# Text Helpers
# =============================================================================


# Full-width ASCII variants U+FF01..U+FF5E map to U+0021..U+007E
FULLWIDTH_START = 0xFF01
FULLWIDTH_END = 0xFF5E
HALFWIDTH_OFFSET = 0xFEE0

MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}


def normalize_text(text: str) -> str:
    """Convert full-width characters to their half-width equivalents.

    Also maps the ideographic space (U+3000) to a plain space and the
    full-width yen sign (U+FFE5) to ¥.

    Example:
        >>> normalize_text("ＩＮＶ－９　￥１，２３４")
        'INV-9 ¥1,234'
    """
    if not text:
        return text

    result = []
    for char in text:
        code_point = ord(char)
        if FULLWIDTH_START <= code_point <= FULLWIDTH_END:
            result.append(chr(code_point - HALFWIDTH_OFFSET))
        elif code_point == 0x3000:
            result.append(" ")
        elif code_point == 0xFFE5:
            result.append("¥")
        else:
            result.append(char)
    return "".join(result)


def parse_amount(value: Any) -> float:
    """Parse "¥1,234.50" / "$ 99" / 12.5 into a float; 0.0 when unparseable."""
    if value is None or value == "":
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = re.sub(r"[¥￥$,\s]", "", str(value))
    try:
        return float(cleaned)
    except ValueError:
        return 0.0


def normalize_invoice_date(text: str) -> Optional[date]:
    """Parse the date formats seen on CN and AU/NZ invoices.

    Numeric dates with the year last are read day-first (AU/NZ convention).
    """
    if not text:
        return None
    text = normalize_text(text).strip()

    patterns: List[Tuple[str, Callable[[re.Match], Tuple[int, int, int]]]] = [
        (r"(\d{4})\s*[年/\-.]\s*(\d{1,2})\s*[月/\-.]\s*(\d{1,2})",
         lambda m: (int(m.group(1)), int(m.group(2)), int(m.group(3)))),
        (r"(\d{1,2})\s+([A-Za-z]{3})[a-z]*\.?\s+(\d{4})",
         lambda m: (int(m.group(3)), MONTHS.get(m.group(2).lower(), 0), int(m.group(1)))),
        (r"([A-Za-z]{3})[a-z]*\.?\s+(\d{1,2})[,\s]+(\d{4})",
         lambda m: (int(m.group(3)), MONTHS.get(m.group(1).lower(), 0), int(m.group(2)))),
        (r"(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{4})",
         lambda m: (int(m.group(3)), int(m.group(2)), int(m.group(1)))),
    ]
    for pattern, to_parts in patterns:
        match = re.search(pattern, text)
        if not match:
            continue
        year, month, day = to_parts(match)
        try:
            return date(year, month, day)
        except ValueError:
            continue
    return None


def detect_region(text: str) -> str:
    """AU or NZ for an English-language tax invoice; AU when unclear."""
    upper = text.upper()
    nz_markers = ("IRD", "NZBN", "NEW ZEALAND", "NZD")
    if any(marker in upper for marker in nz_markers):
        return "NZ"
    return "AU"


def _first_match(text: str, patterns: Sequence[str], flags: int = re.IGNORECASE) -> Optional[re.Match]:
    for pattern in patterns:
        match = re.search(pattern, text, flags)
        if match:
            return match
    return None


def _extract_chinese_fields(text: str, fields: Dict[str, Any]) -> None:
    if match := re.search(r"发票代码[:：]?\s*(\d{10,12})", text):
        fields["invoice_code"] = match.group(1)
    if match := re.search(r"发票号码[:：]?\s*(\d{8,20})", text):
        fields["invoice_num"] = match.group(1)
    if match := re.search(r"(\d{4}\s*[年/\-]\s*\d{1,2}\s*[月/\-]\s*\d{1,2}\s*日?)", text):
        fields["invoice_date"] = match.group(1)

    amounts = [parse_amount(m) for m in re.findall(r"[¥￥]\s*([\d,]+\.?\d*)", text)]
    if amounts:
        fields["total_amount"] = max(amounts)

    if match := re.search(r"销售方.*?名称[:：]?\s*([^\n]+)", text):
        fields["seller_name"] = match.group(1).strip()
    if match := re.search(r"购买方.*?名称[:：]?\s*([^\n]+)", text):
        fields["purchaser_name"] = match.group(1).strip()
    if match := re.search(r"纳税人识别号[:：]?\s*([A-Z0-9]{15,20})", text, re.IGNORECASE):
        fields["seller_register_num"] = match.group(1)


def _extract_au_nz_fields(text: str, fields: Dict[str, Any]) -> None:
    abn = _first_match(text, [
        r"ABN[:\s]*(\d{2}\s?\d{3}\s?\d{3}\s?\d{3})",
        r"A\.B\.N\.?[:\s]*(\d[\d ]{10,13})",
    ])
    if abn:
        fields["abn"] = re.sub(r"\s", "", abn.group(1))
        fields["seller_register_num"] = fields["abn"]

    if nzbn := re.search(r"NZBN[:\s]*(\d{13})", text, re.IGNORECASE):
        fields["nzbn"] = nzbn.group(1)
        fields["seller_register_num"] = fields["nzbn"]

    if gst := re.search(r"GST\s*(?:No\.?|Number|#)?[:\s]*(\d{2,3}[-\s]?\d{3}[-\s]?\d{3})\b", text, re.IGNORECASE):
        fields["gst_number"] = re.sub(r"[-\s]", "", gst.group(1))

    for pattern in (
        r"Invoice\s*(?:No\.?|Number|#)\s*[:\s]*([A-Z0-9][A-Z0-9\-]+)",
        r"Inv\.?\s*#\s*[:\s]*([A-Z0-9][A-Z0-9\-]+)",
        r"Reference[:\s]+([A-Z0-9][A-Z0-9\-]+)",
        r"Invoice\s*ID[:\s]*([A-Z0-9][A-Z0-9\-]+)",
        r"\b(INV-?\d+)\b",
    ):
        match = re.search(pattern, text, re.IGNORECASE)
        if match and len(match.group(1)) > 2:
            fields["invoice_num"] = match.group(1).strip()
            break

    parsed = normalize_invoice_date(text)
    if parsed:
        fields["invoice_date"] = parsed.isoformat()

    total = _first_match(text, [
        r"\bTotal\s*(?:Amount|Due|\(inc\.? GST\))?[:\s]*(?:AUD|NZD)?\s*\$?\s*([\d,]+\.\d{2})",
        r"Amount\s*Due[:\s]*\$?\s*([\d,]+\.\d{2})",
        r"Balance\s*Due[:\s]*\$?\s*([\d,]+\.\d{2})",
    ])
    if total and parse_amount(total.group(1)) > 0:
        fields["total_amount"] = parse_amount(total.group(1))
    else:
        amounts = [parse_amount(m) for m in re.findall(r"\$\s*([\d,]+\.?\d*)", text)]
        if amounts:
            fields["total_amount"] = max(amounts)

    seller = _first_match(text, [
        r"^([A-Z][A-Za-z0-9 &.,'-]*?(?:Pty|Ltd|Limited|Inc|Corp|Company|Services?|Trading|Group)\.?)[ \t]*$",
        r"From[:\s]*\n?\s*([A-Z][A-Za-z0-9 &.,'-]+)",
    ], re.IGNORECASE | re.MULTILINE)
    if seller:
        name = seller.group(1).strip()
        if len(name) > 2 and "invoice" not in name.lower():
            fields["seller_name"] = name

    purchaser = _first_match(text, [
        r"Bill(?:ed)?\s*To[:\s]*\n?\s*([A-Z][A-Za-z0-9 &.,'-]+)",
        r"Sold\s*To[:\s]*\n?\s*([A-Z][A-Za-z0-9 &.,'-]+)",
        r"Customer[:\s]*\n?\s*([A-Z][A-Za-z0-9 &.,'-]+)",
    ])
    if purchaser and len(purchaser.group(1).strip()) > 2:
        fields["purchaser_name"] = purchaser.group(1).strip()

    tax = _first_match(text, [
        r"GST\s*(?:Total|Amount)?[:\s]*\$\s*([\d,]+\.\d{2})",
        r"Tax[:\s]*\$?\s*([\d,]+\.\d{2})",
    ])
    if tax:
        fields["total_tax"] = parse_amount(tax.group(1))

    if desc := re.search(
        r"Description\s*\n+([\s\S]{3,200}?)(?:\n\s*\n|\n\s*(?:Qty|Quantity|Subtotal|Total))",
        text,
        re.IGNORECASE,
    ):
        fields["commodity_name"] = desc.group(1).replace("\n", ", ").strip()[:100]


def extract_invoice_fields(text: str) -> Dict[str, Any]:
    """Pull invoice fields out of raw OCR text (CN VAT or AU/NZ tax invoices)."""
    text = normalize_text(text)
    upper = text.upper()
    fields: Dict[str, Any] = {}

    if "增值税专用发票" in text:
        fields.update(invoice_type="增值税专用发票", invoice_region="CN")
    elif "增值税普通发票" in text:
        fields.update(invoice_type="增值税普通发票", invoice_region="CN")
    elif "TAX INVOICE" in upper or "ABN" in upper or "GST" in upper:
        fields.update(invoice_type="Tax Invoice", invoice_region=detect_region(text))
    elif "INVOICE" in upper:
        fields.update(invoice_type="Invoice", invoice_region=detect_region(text))

    if fields.get("invoice_region") == "CN":
        _extract_chinese_fields(text, fields)
    else:
        _extract_au_nz_fields(text, fields)
    return fields


# =============================================================================
# Providers
# =============================================================================


class OCRProvider(ABC):
    """One OCR vendor."""

    name: str = ""
    label: str = ""
    priority: int = 100

    def __init__(self, timeout: Optional[float] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.timeout = timeout or settings.ocr_timeout
        self._client: Optional[httpx.AsyncClient] = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    @property
    @abstractmethod
    def enabled(self) -> bool:
        """Whether credentials for this provider are configured."""

    @abstractmethod
    async def recognize(self, image_base64: str) -> InvoiceRecord:
        """Recognise one invoice image.

        Raises:
            OCRProviderError: On any provider failure
        """


class BaiduOCRProvider(OCRProvider):
    """Baidu VAT invoice OCR (returns structured fields)."""

    name = "baidu"
    label = "百度OCR"
    priority = 1

    TOKEN_URL = "https://aip.baidubce.com/oauth/2.0/token"
    VAT_INVOICE_URL = "https://aip.baidubce.com/rest/2.0/ocr/v1/vat_invoice"
    TOKEN_LIFETIME = timedelta(days=29)

    def __init__(
        self,
        api_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.api_key = api_key if api_key is not None else settings.baidu_ocr_api_key
        self.secret_key = secret_key if secret_key is not None else settings.baidu_ocr_secret_key
        self._clock = clock
        self._access_token: Optional[str] = None
        self._token_expiry: Optional[datetime] = None

    @property
    def enabled(self) -> bool:
        return bool(self.api_key and self.secret_key)

    async def _get_access_token(self) -> str:
        if self._access_token and self._token_expiry and self._clock() < self._token_expiry:
            return self._access_token

        client = await self._get_client()
        try:
            response = await client.post(
                self.TOKEN_URL,
                params={
                    "grant_type": "client_credentials",
                    "client_id": self.api_key,
                    "client_secret": self.secret_key,
                },
            )
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise OCRProviderError(f"获取百度token失败: {e}") from e

        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise OCRProviderError(f"获取百度token失败: {data.get('error_description', data) if isinstance(data, dict) else data}")

        self._access_token = token
        self._token_expiry = self._clock() + self.TOKEN_LIFETIME
        return token

    async def recognize(self, image_base64: str) -> InvoiceRecord:
        token = await self._get_access_token()
        client = await self._get_client()
        try:
            response = await client.post(
                self.VAT_INVOICE_URL,
                params={"access_token": token},
                data={"image": image_base64},
            )
            data = response.json()
        except httpx.TimeoutException as e:
            raise OCRProviderError(f"百度OCR超时: {e}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise OCRProviderError(f"百度OCR错误: {e}") from e

        words = data.get("words_result") if isinstance(data, dict) else None
        if not words:
            message = data.get("error_msg") if isinstance(data, dict) else None
            raise OCRProviderError(f"百度OCR错误: {message or '返回空结果'}")
        return self._to_record(words)

    @staticmethod
    def _to_record(words: Dict[str, Any]) -> InvoiceRecord:
        def word(key: str) -> str:
            value = words.get(key)
            return value.get("word", "") if isinstance(value, dict) else ""

        commodities = words.get("CommodityName") or []
        return InvoiceRecord(
            invoice_type=word("InvoiceType") or "未知",
            invoice_code=word("InvoiceCode"),
            invoice_num=word("InvoiceNum"),
            invoice_date=word("InvoiceDate"),
            total_amount=parse_amount(word("TotalAmount")),
            total_tax=parse_amount(word("TotalTax")),
            amount_in_figures=parse_amount(word("AmountInFiguers") or word("AmountInFigures")),
            seller_name=word("SellerName"),
            seller_register_num=word("SellerRegisterNum"),
            purchaser_name=word("PurchaserName"),
            commodity_name=", ".join(item.get("word", "") for item in commodities if isinstance(item, dict)),
            invoice_region="CN",
            provider="baidu",
        )


class GoogleVisionOCRProvider(OCRProvider):
    """Google Cloud Vision document text detection plus field extraction."""

    name = "google"
    label = "Google Cloud Vision"
    priority = 2

    ANNOTATE_URL = "https://vision.googleapis.com/v1/images:annotate"

    def __init__(self, api_key: Optional[str] = None, **kwargs: Any):
        super().__init__(**kwargs)
        self.api_key = api_key if api_key is not None else settings.google_vision_api_key

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def recognize(self, image_base64: str) -> InvoiceRecord:
        client = await self._get_client()
        payload = {
            "requests": [{
                "image": {"content": image_base64},
                "features": [{"type": "DOCUMENT_TEXT_DETECTION", "maxResults": 1}],
            }]
        }
        try:
            response = await client.post(
                self.ANNOTATE_URL,
                params={"key": self.api_key},
                json=payload,
            )
            data = response.json()
        except httpx.TimeoutException as e:
            raise OCRProviderError(f"Google Vision超时: {e}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise OCRProviderError(f"Google Vision错误: {e}") from e

        if isinstance(data, dict) and data.get("error"):
            raise OCRProviderError(f"Google Vision错误: {data['error'].get('message')}")

        result = (data.get("responses") or [{}])[0] if isinstance(data, dict) else {}
        if result.get("error"):
            raise OCRProviderError(f"Google Vision错误: {result['error'].get('message')}")
        text = (result.get("fullTextAnnotation") or {}).get("text")
        if not text:
            raise OCRProviderError("Google Vision返回空结果")

        fields = extract_invoice_fields(text)
        fields.setdefault("amount_in_figures", fields.get("total_amount", 0.0))
        return InvoiceRecord(provider="google", **fields)


# =============================================================================
# OCR Service
# =============================================================================


class OCRService:
    """Recognises invoices with the first enabled provider that succeeds.

    Example:
        ```python
        async with OCRService() as ocr:
            record = await ocr.recognize_image(photo_bytes)
        ```
    """

    MAX_IMAGE_SIZE = 4096  # Max dimension for image resizing
    JPEG_QUALITY = 90

    def __init__(self, providers: Optional[Sequence[OCRProvider]] = None):
        self.providers: List[OCRProvider] = list(
            providers if providers is not None else [BaiduOCRProvider(), GoogleVisionOCRProvider()]
        )

    async def close(self) -> None:
        """Close provider HTTP clients."""
        for provider in self.providers:
            await provider.close()

    async def __aenter__(self) -> "OCRService":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def available_providers(self) -> List[OCRProvider]:
        return sorted(
            (provider for provider in self.providers if provider.enabled),
            key=lambda provider: provider.priority,
        )

    def status(self) -> Dict[str, Any]:
        return {
            "providers": [
                {"name": p.label, "enabled": p.enabled, "priority": p.priority}
                for p in self.providers
            ],
            "available": [p.name for p in self.available_providers()],
        }

    def _prepare_image(self, image_data: bytes) -> str:
        """Resize large images and re-encode as base64 JPEG.

        Raises:
            OCRProcessingError: If the bytes are not a readable image
        """
        try:
            image = Image.open(io.BytesIO(image_data))
            if image.mode not in ("RGB", "L"):
                image = image.convert("RGB")

            width, height = image.size
            if width > self.MAX_IMAGE_SIZE or height > self.MAX_IMAGE_SIZE:
                ratio = min(self.MAX_IMAGE_SIZE / width, self.MAX_IMAGE_SIZE / height)
                new_size = (int(width * ratio), int(height * ratio))
                image = image.resize(new_size, Image.Resampling.LANCZOS)
                logger.debug(f"Resized image from {width}x{height} to {new_size[0]}x{new_size[1]}")

            buffer = io.BytesIO()
            image.save(buffer, format="JPEG", quality=self.JPEG_QUALITY)
            return base64.b64encode(buffer.getvalue()).decode("utf-8")
        except (UnidentifiedImageError, OSError, ValueError) as e:
            raise OCRProcessingError(f"Failed to prepare image: {e}") from e

    async def recognize(self, image_base64: str) -> InvoiceRecord:
        """Recognise a base64-encoded invoice image.

        Raises:
            NoOCRProviderError: No provider is configured
            AllOCRProvidersFailedError: Every enabled provider failed
        """
        providers = self.available_providers()
        if not providers:
            raise NoOCRProviderError("没有可用的OCR服务商，请检查环境变量配置")

        failures: List[Tuple[str, str]] = []
        for provider in providers:
            logger.info(f"Recognising invoice with {provider.label}")
            try:
                record = await provider.recognize(image_base64)
            except OCRError as e:
                logger.warning(f"{provider.label} failed: {e.message}")
                failures.append((provider.label, e.message))
                continue
            logger.info(f"{provider.label} recognised invoice {record.invoice_num or '(no number)'}")
            return record

        raise AllOCRProvidersFailedError(failures)

    async def recognize_image(self, image_data: bytes) -> InvoiceRecord:
        """Normalise raw image bytes, then recognise them."""
        return await self.recognize(self._prepare_image(image_data))
