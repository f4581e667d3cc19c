# services/extraction/client.py
from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Sequence, Tuple, TypeVar

from services.extraction.errors import MissingCredential, ServiceUnreachable, UnparseableResponse
from services.extraction.parsing import match_defect_category, parse_label_response
from services.extraction.service import VisionService
from services.ingestion.payload import parse_data_url
from services.records.domain import DEFECT_CATEGORIES

logger = logging.getLogger(__name__)

T = TypeVar("T")

MIN_CREDENTIAL_LENGTH = 20

OC_LABEL_KEYS: Tuple[str, ...] = ("oc_serial_number", "wc", "model_pn", "ver")
FACTORY_LABEL_KEYS: Tuple[str, ...] = ("odf", "size", "bom")

NO_DESCRIPTION = "No description generated."
SIMULATED_DESCRIPTION = (
    "Simulated analysis: the panel shows a localized display anomaly consistent with a "
    "source-driver or cell defect. Verify under a uniform test pattern before disposition."
)

SIMULATED_POOLS: Dict[str, Tuple[str, ...]] = {
    "oc_serial_number": ("TA5144B1200345", "1500258A0917", "0MF2L9K33021"),
    "wc": ("2505", "2412", "2451"),
    "model_pn": ("ST3151A07-2", "CV500U5-L04", "V430DJ2-Q01"),
    "ver": ("Ver.2.9", "Rev: 02", "P2"),
    "odf": ("TS2501-291", "IDL2507002"),
    "size": ('32"', '43"', '65"'),
    "bom": ("2300132VA1Z01510", "BOM-EX-001"),
}


class FallbackPolicy(str, Enum):
    LIVE_ONLY = "live_only"
    SIMULATE_ON_MISSING_CREDENTIAL = "simulate_on_missing_credential"
    SIMULATE_ON_ANY_FAILURE = "simulate_on_any_failure"


class Tier(str, Enum):
    LIVE = "live"
    SIMULATED = "simulated"


def has_valid_credential(api_key: Optional[str]) -> bool:
    return isinstance(api_key, str) and len(api_key.strip()) >= MIN_CREDENTIAL_LENGTH


# --- Instructions ---
DEFECT_ANALYSIS_PROMPT = (
    "Analyze this defective electronic panel image and provide a professional, technical "
    '"Defect Description" for an RMA claim. Focus on visible patterns, cracks, discolorations, '
    "or structural failures. Keep it concise. Current user notes: {notes}"
)

DEFECT_CATEGORY_PROMPT = (
    "Look at this electronic display defect. Categorize it into EXACTLY ONE of the following types: "
    "{categories}. If it doesn't clearly fit one, choose the closest match or \"Abnormal Display\". "
    "Return ONLY the category name string."
)

OC_LABEL_PROMPT = (
    "Look at this panel label image and extract the following 4 specific values:\n"
    "1. oc_serial_number: the primary OC Serial Number, a long alphanumeric string near a barcode "
    "or QR code (e.g. 'TA5144...', '1500258...', '0MF2L9...').\n"
    "2. wc: the W/C (Week/Cycle), usually a 4-digit code (e.g. '2505').\n"
    "3. model_pn: the Model P/N (Panel Part No), e.g. 'ST3151A07-2', 'CV500U5-L04', 'V430DJ2-Q01'.\n"
    "4. ver: the Ver. (Version or Revision), e.g. 'Ver.2.9', 'Rev: 02', 'P2'.\n"
    "Return ONLY a JSON object with keys: oc_serial_number, wc, model_pn, ver. "
    "Use an empty string for any value you cannot find."
)

FACTORY_LABEL_PROMPT = (
    "Look at this factory label image:\n"
    "1. odf: the ODF Number or P/O Number, usually like 'TS2501-291' or 'IDL2507002'.\n"
    "2. size: the screen size. Model codes like 'CX320...' or 'LVU430...' carry it in the digits "
    "after the prefix ('32' in 'CX320'). Answer like '32\"'.\n"
    "3. bom: the Expressluck BOM, an alphanumeric string often at the bottom of the label, "
    "e.g. '2300132VA1Z01510'.\n"
    "Return ONLY a JSON object with keys: odf, size, bom. "
    "Use an empty string for any value you cannot find."
)


def _string_schema(descriptions: Dict[str, str]) -> Dict[str, Any]:
    return {
        "type": "OBJECT",
        "properties": {k: {"type": "STRING", "description": d} for k, d in descriptions.items()},
        "required": list(descriptions.keys()),
    }


OC_LABEL_SCHEMA = _string_schema(
    {
        "oc_serial_number": "The extracted OC Serial Number",
        "wc": "The extracted Week/Cycle code",
        "model_pn": "The extracted Model P/N",
        "ver": "The extracted Version/Revision code",
    }
)

FACTORY_LABEL_SCHEMA = _string_schema(
    {
        "odf": "The extracted ODF/P/O Number",
        "size": "The extracted screen size (e.g. '32\"')",
        "bom": "The extracted Expressluck BOM string",
    }
)


@dataclass(frozen=True)
class ExtractionConfig:
    policy: FallbackPolicy = FallbackPolicy.SIMULATE_ON_MISSING_CREDENTIAL
    simulated_delay_s: float = 0.8


class ExtractionClient:
    """
    Three-tier wrapper over a vision service:
      - live: credential looks valid and a service is wired
      - simulated: no usable credential (unless policy is LIVE_ONLY)
      - failed-live: ServiceUnreachable is raised, or simulated under SIMULATE_ON_ANY_FAILURE
    All operations take an image as a 'data:<mime>;base64,<payload>' string.
    """

    def __init__(
        self,
        *,
        service: Optional[VisionService],
        api_key: Optional[str],
        config: Optional[ExtractionConfig] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.service = service
        self.api_key = api_key
        self.config = config or ExtractionConfig()
        self.rng = rng or random.Random()
        self._sleep = sleep

    @property
    def tier(self) -> Tier:
        if self.service is not None and has_valid_credential(self.api_key):
            return Tier.LIVE
        return Tier.SIMULATED

    # --- Operations ---
    def analyze_defect(self, image_data_url: str, existing_notes: str = "") -> str:
        def live() -> str:
            text = self._generate(image_data_url, DEFECT_ANALYSIS_PROMPT.format(notes=existing_notes or ""))
            return text.strip() or NO_DESCRIPTION

        return self._run("defect analysis", live, lambda: SIMULATED_DESCRIPTION)

    def detect_defect_category(self, image_data_url: str) -> Dict[str, str]:
        def live() -> Dict[str, str]:
            prompt = DEFECT_CATEGORY_PROMPT.format(categories=", ".join(DEFECT_CATEGORIES))
            return {"defect_description": match_defect_category(self._generate(image_data_url, prompt))}

        def simulate() -> Dict[str, str]:
            return {"defect_description": self.rng.choice(DEFECT_CATEGORIES)}

        return self._run("defect category", live, simulate)

    def extract_oc_label(self, image_data_url: str) -> Dict[str, str]:
        return self._extract_label("OC label", image_data_url, OC_LABEL_PROMPT, OC_LABEL_SCHEMA, OC_LABEL_KEYS)

    def extract_factory_label(self, image_data_url: str) -> Dict[str, str]:
        return self._extract_label(
            "factory label", image_data_url, FACTORY_LABEL_PROMPT, FACTORY_LABEL_SCHEMA, FACTORY_LABEL_KEYS
        )

    # --- Internals ---
    def _extract_label(
        self,
        task: str,
        image_data_url: str,
        prompt: str,
        schema: Dict[str, Any],
        keys: Sequence[str],
    ) -> Dict[str, str]:
        def live() -> Dict[str, str]:
            fields = parse_label_response(self._generate(image_data_url, prompt, schema), keys)
            if not any(fields.values()):
                logger.warning("%s extraction returned no usable fields", task)
            return fields

        return self._run(task, live, lambda: self._simulate_fields(keys))

    def _simulate_fields(self, keys: Sequence[str]) -> Dict[str, str]:
        return {k: self.rng.choice(SIMULATED_POOLS[k]) for k in keys}

    def _generate(self, image_data_url: str, instruction: str, schema: Optional[Dict[str, Any]] = None) -> str:
        if self.service is None:
            raise MissingCredential("No vision service configured")
        try:
            subtype, data = parse_data_url(image_data_url)
        except ValueError as e:
            raise UnparseableResponse(f"Invalid image data-URL: {e}") from e
        return self.service.generate(data, f"image/{subtype}", instruction, schema)

    def _run(self, task: str, live: Callable[[], T], simulate: Callable[[], T]) -> T:
        policy = self.config.policy

        if self.tier is Tier.SIMULATED:
            if policy is FallbackPolicy.LIVE_ONLY:
                raise MissingCredential(f"{task}: no valid API credential configured")
            logger.info("%s: no valid credential, using simulated values", task)
            return self._simulated(simulate)

        try:
            return live()
        except ServiceUnreachable as e:
            if policy is FallbackPolicy.SIMULATE_ON_ANY_FAILURE:
                logger.warning("%s: live call failed (%s), using simulated values", task, e)
                return self._simulated(simulate)
            logger.warning("%s: live call failed: %s", task, e)
            raise

    def _simulated(self, simulate: Callable[[], T]) -> T:
        if self.config.simulated_delay_s > 0:
            self._sleep(self.config.simulated_delay_s)
        return simulate()
