# backend/volumetric_weight_engine.py

"""
Volumetric Weight Engine - Billable Weight Component

This engine is responsible for:
- Parcel validation (dimensions and source units)
- Size and weight unit conversion via fixed factor tables
- Volumetric (dimensional) weight calculation
- Billable weight (greater of actual and volumetric)
- Rounding and calculation audit trail

This engine MUST NOT:
- Price shipments
- Process parcels in bulk
- Guess units
- Infer missing conversion pairs from their reverse

GLOBAL INVARIANTS (ENFORCED):
1) All dimensions MUST be strictly positive
2) Source units MUST be exact tokens (mm, cm, m, in / g, kg, lb)
3) Conversion pairs are directed; only identity is implicit
4) Unknown conversion pair → HARD ERROR
5) Divisor MUST be strictly positive
6) All arithmetic in Decimal; float only after rounding
7) Rounding is always ROUND_HALF_UP
"""

from enum import Enum
from typing import Optional, List, Dict, Any, Tuple, Union
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, localcontext
from pydantic import BaseModel, ConfigDict, ValidationInfo, field_validator
import logging

from volumetric_settings import get_settings

logger = logging.getLogger(__name__)

CALCULATION_VERSION = "1.0.0"

# Working precision for intermediate arithmetic (significant digits)
WORKING_PRECISION = 50

# ==================== ENUMS ====================

class SizeUnit(str, Enum):
    """Supported size (length) units"""
    MILLIMETER = "mm"
    CENTIMETER = "cm"
    METER = "m"
    INCH = "in"


class WeightUnit(str, Enum):
    """Supported weight (mass) units"""
    GRAM = "g"
    KILOGRAM = "kg"
    POUND = "lb"


class FactorSource(str, Enum):
    """Where a calculation step took its factor from"""
    DIMENSIONS = "DIMENSIONS"
    IDENTITY = "IDENTITY"
    SIZE_TABLE = "SIZE_TABLE"
    WEIGHT_TABLE = "WEIGHT_TABLE"
    DIVISOR = "DIVISOR"
    PRECISION = "PRECISION"


class DimensionalFactor(int, Enum):
    """Common carrier divisors. Any positive divisor is accepted by the engine."""
    METRIC_5000 = 5000     # cm³ per kg (express / courier)
    METRIC_6000 = 6000     # cm³ per kg (road / economy)
    IMPERIAL_139 = 139     # in³ per lb (domestic US retail)
    IMPERIAL_166 = 166     # in³ per lb (international US)


# ==================== CONVERSION TABLES ====================

# Exact definitions
INCH_IN_CM = Decimal("2.54")
INCH_IN_MM = Decimal("25.4")
INCH_IN_M = Decimal("0.0254")
POUND_IN_KG = Decimal("0.45359237")
POUND_IN_G = Decimal("453.59237")

# factor = multiply a quantity in "from" by this value to get "to"
# reciprocals are computed at WORKING_PRECISION, independent of the caller's context
with localcontext() as _ctx:
    _ctx.prec = WORKING_PRECISION

    SIZE_CONVERSION_FACTORS: Dict[Tuple[str, str], Decimal] = {
        ("mm", "cm"): Decimal("0.1"),
        ("cm", "mm"): Decimal("10"),
        ("mm", "m"): Decimal("0.001"),
        ("m", "mm"): Decimal("1000"),
        ("cm", "m"): Decimal("0.01"),
        ("m", "cm"): Decimal("100"),
        ("in", "cm"): INCH_IN_CM,
        ("cm", "in"): Decimal(1) / INCH_IN_CM,
        ("in", "mm"): INCH_IN_MM,
        ("mm", "in"): Decimal(1) / INCH_IN_MM,
        ("in", "m"): INCH_IN_M,
        ("m", "in"): Decimal(1) / INCH_IN_M,
    }

    WEIGHT_CONVERSION_FACTORS: Dict[Tuple[str, str], Decimal] = {
        ("g", "kg"): Decimal("0.001"),
        ("kg", "g"): Decimal("1000"),
        ("lb", "kg"): POUND_IN_KG,
        ("kg", "lb"): Decimal(1) / POUND_IN_KG,
        ("lb", "g"): POUND_IN_G,
        ("g", "lb"): Decimal(1) / POUND_IN_G,
    }

# ==================== ERROR CLASSES ====================

class VolumetricWeightError(Exception):
    """Base volumetric weight error"""
    def __init__(self, error_code: str, message: str, field: Optional[str] = None, severity: str = "HARD_ERROR"):
        self.error_code = error_code
        self.message = message
        self.field = field
        self.severity = severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "field": self.field,
            "severity": self.severity
        }


class InvalidDimensionError(VolumetricWeightError):
    """Dimension must be a positive number"""
    def __init__(self, field: str, value: Any):
        super().__init__(
            "INVALID_DIMENSION",
            f"Length, width and height must be greater than 0. Received {field}={value!r}",
            field=field
        )


class UnsupportedUnitError(VolumetricWeightError):
    """Unit not in the supported set"""
    def __init__(self, unit: Any, allowed_units: List[str], field: str):
        super().__init__(
            "UNSUPPORTED_UNIT",
            f"Unit {unit!r} is not supported. Allowed units: {', '.join(allowed_units)}",
            field=field
        )


class InvalidDivisorError(VolumetricWeightError):
    """Divisor must be a positive number"""
    def __init__(self, divisor: Any):
        super().__init__(
            "INVALID_DIVISOR",
            f"Divisor must be greater than 0. Received: {divisor!r}",
            field="divisor"
        )


class UnsupportedConversionError(VolumetricWeightError):
    """No conversion factor between the two units"""
    def __init__(self, from_unit: str, to_unit: str):
        self.from_unit = from_unit
        self.to_unit = to_unit
        super().__init__(
            "UNSUPPORTED_CONVERSION",
            f"Unsupported unit conversion {from_unit} => {to_unit}",
            field="unit"
        )


class InvalidPrecisionError(VolumetricWeightError):
    """Precision must be a non-negative integer"""
    def __init__(self, precision: Any):
        super().__init__(
            "INVALID_PRECISION",
            f"Precision must be an integer >= 0. Received: {precision!r}",
            field="precision"
        )


class InvalidWeightError(VolumetricWeightError):
    """Actual weight must be a non-negative number"""
    def __init__(self, weight: Any):
        super().__init__(
            "INVALID_WEIGHT",
            f"Actual weight must be 0 or greater. Received: {weight!r}",
            field="actual_weight"
        )


# ==================== HELPERS ====================

UnitLike = Union[str, Enum]


def _unit_token(unit: Any) -> Any:
    """Plain token for enum members, anything else unchanged"""
    if isinstance(unit, Enum):
        return unit.value
    return unit


def _canonical_token(from_token: str, to_unit: Any) -> str:
    """Target token as reported on results; identity reports the source token"""
    to_token = _unit_token(to_unit)
    if isinstance(to_token, str) and to_token.casefold() == from_token.casefold():
        return from_token
    return str(to_token)


def _to_decimal(value: Any) -> Optional[Decimal]:
    """
    Convert a caller-supplied number to Decimal via its string form.

    Returns None when the value is not a finite number.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, Enum):
        value = value.value
    try:
        decimal_value = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not decimal_value.is_finite():
        return None
    return decimal_value


def resolve_factor(
    from_unit: UnitLike,
    to_unit: UnitLike,
    table: Dict[Tuple[str, str], Decimal]
) -> Decimal:
    """
    Find the conversion factor between two units.

    Identical units (case-insensitive) resolve to 1 without a lookup.
    Otherwise the directed pair must be present in the table; the reverse
    pair is never used.

    Args:
        from_unit: Source unit token or enum member
        to_unit: Target unit token or enum member
        table: SIZE_CONVERSION_FACTORS or WEIGHT_CONVERSION_FACTORS

    Returns:
        Decimal factor

    Raises:
        UnsupportedConversionError: If no directed pair exists
    """
    from_token = _unit_token(from_unit)
    to_token = _unit_token(to_unit)

    if isinstance(from_token, str) and isinstance(to_token, str):
        if from_token.casefold() == to_token.casefold():
            return Decimal(1)
        factor = table.get((from_token, to_token))
        if factor is not None:
            return factor

    raise UnsupportedConversionError(str(from_token), str(to_token))


# ==================== DATA MODELS ====================

class Parcel(BaseModel):
    """Immutable rectangular parcel with its source units"""
    model_config = ConfigDict(frozen=True)

    length: Decimal
    width: Decimal
    height: Decimal
    size_unit: SizeUnit
    weight_unit: WeightUnit

    # Domain errors are not ValueError subclasses, so pydantic lets them propagate unwrapped
    @field_validator("length", "width", "height", mode="before")
    @classmethod
    def validate_dimension(cls, raw_value: Any, info: ValidationInfo) -> Decimal:
        value = _to_decimal(raw_value)
        if value is None or value <= 0:
            raise InvalidDimensionError(info.field_name, raw_value)
        return value

    @field_validator("size_unit", mode="before")
    @classmethod
    def validate_size_unit(cls, size_unit: Any) -> SizeUnit:
        token = _unit_token(size_unit)
        if not isinstance(token, str) or token not in {u.value for u in SizeUnit}:
            raise UnsupportedUnitError(size_unit, [u.value for u in SizeUnit], field="size_unit")
        return SizeUnit(token)

    @field_validator("weight_unit", mode="before")
    @classmethod
    def validate_weight_unit(cls, weight_unit: Any) -> WeightUnit:
        token = _unit_token(weight_unit)
        if not isinstance(token, str) or token not in {u.value for u in WeightUnit}:
            raise UnsupportedUnitError(weight_unit, [u.value for u in WeightUnit], field="weight_unit")
        return WeightUnit(token)

    @classmethod
    def create(
        cls,
        length: Any,
        width: Any,
        height: Any,
        size_unit: UnitLike,
        weight_unit: UnitLike
    ) -> "Parcel":
        """
        Validate inputs and build a Parcel.

        Raises:
            InvalidDimensionError: If any dimension is not a positive number
            UnsupportedUnitError: If a unit token is not supported
        """
        return cls(
            length=length,
            width=width,
            height=height,
            size_unit=size_unit,
            weight_unit=weight_unit
        )

    def model_copy(self, *, update: Optional[Dict[str, Any]] = None, deep: bool = False) -> "Parcel":
        """Copies with updates are re-validated like a fresh Parcel"""
        if not update:
            return super().model_copy(deep=deep)
        return type(self)(**{**self.model_dump(), **update})

    @property
    def volume(self) -> Decimal:
        """length × width × height in the parcel's own size unit"""
        with localcontext() as ctx:
            ctx.prec = WORKING_PRECISION
            return self.length * self.width * self.height


def create_parcel(
    length: Any,
    width: Any,
    height: Any,
    size_unit: UnitLike,
    weight_unit: UnitLike
) -> Parcel:
    """Validating constructor for Parcel (see Parcel.create)"""
    return Parcel.create(length, width, height, size_unit, weight_unit)


class CalculationStep(BaseModel):
    """Single calculation step in audit trail"""
    model_config = ConfigDict(frozen=True)

    step_number: int
    description: str
    from_unit: Optional[str] = None
    to_unit: Optional[str] = None
    factor: Optional[Decimal] = None
    factor_source: FactorSource
    value: Decimal
    formula: str


class CalculationBreakdown(BaseModel):
    """Complete calculation audit trail"""
    model_config = ConfigDict(frozen=True)

    steps: List[CalculationStep]
    total_steps: int


class VolumetricWeightResult(BaseModel):
    """Engine output contract"""
    model_config = ConfigDict(frozen=True)

    weight: float
    rounded_weight: Decimal
    raw_weight: Decimal
    size_unit: str
    weight_unit: str
    divisor: Decimal
    precision: int
    was_rounded: bool
    breakdown: CalculationBreakdown
    calculation_version: str = CALCULATION_VERSION


class BillableWeightResult(BaseModel):
    """Greater of actual and volumetric weight"""
    model_config = ConfigDict(frozen=True)

    actual_weight: float
    volumetric_weight: float
    billable_weight: float
    uses_volumetric_weight: bool
    weight_unit: str
    volumetric: VolumetricWeightResult


# ==================== VOLUMETRIC WEIGHT ENGINE ====================

class VolumetricWeightEngine:
    """
    Stateless volumetric weight engine.

    Holds the size and weight conversion tables and applies:
        weight = (l × w × h × s³ / divisor) × w_factor
    rounded half-up to the requested precision.
    """

    def __init__(
        self,
        size_factors: Optional[Dict[Tuple[str, str], Decimal]] = None,
        weight_factors: Optional[Dict[Tuple[str, str], Decimal]] = None
    ):
        """
        Initialize engine.

        Args:
            size_factors: Size conversion table (defaults to SIZE_CONVERSION_FACTORS)
            weight_factors: Weight conversion table (defaults to WEIGHT_CONVERSION_FACTORS)
        """
        self.size_factors = size_factors if size_factors is not None else SIZE_CONVERSION_FACTORS
        self.weight_factors = weight_factors if weight_factors is not None else WEIGHT_CONVERSION_FACTORS
        self.version = CALCULATION_VERSION

    @staticmethod
    def validate_divisor(divisor: Any) -> Decimal:
        value = _to_decimal(divisor)
        if value is None or value <= 0:
            raise InvalidDivisorError(divisor)
        return value

    @staticmethod
    def resolve_precision(precision: Optional[int]) -> int:
        """Configured default when None, otherwise must be an int >= 0"""
        if precision is None:
            return get_settings().default_precision
        if isinstance(precision, bool) or not isinstance(precision, int) or precision < 0:
            raise InvalidPrecisionError(precision)
        return precision

    @staticmethod
    def apply_precision(value: Decimal, decimal_places: int) -> Tuple[Decimal, bool]:
        """
        Round value half-up to decimal_places.

        Returns (rounded_value, was_rounded); was_rounded is True only if
        rounding actually changed the value.
        """
        with localcontext() as ctx:
            # quantize needs room for every integer digit plus the requested places
            ctx.prec = max(WORKING_PRECISION, value.adjusted() + decimal_places + 2)
            rounded = value.quantize(Decimal(10) ** -decimal_places, rounding=ROUND_HALF_UP)
        return rounded, rounded != value

    def calculate_with_breakdown(
        self,
        parcel: Parcel,
        target_size_unit: UnitLike,
        divisor: Any,
        target_weight_unit: Optional[UnitLike] = None,
        precision: Optional[int] = None
    ) -> VolumetricWeightResult:
        """
        Main calculation method.

        Follows strict step-by-step process:
        1) Validate divisor and precision
        2) Default target weight unit to the parcel's weight unit
        3) Resolve size factor s (parcel size unit → target size unit)
        4) volume = l × w × h
        5) Scale volume by s³
        6) Divide by divisor (weight in parcel weight unit)
        7) Resolve weight factor and convert
        8) Round half-up

        Args:
            parcel: Validated Parcel
            target_size_unit: Size unit the divisor is expressed in
            divisor: Dimensional factor, e.g. 5000 or 139
            target_weight_unit: Output weight unit (None/empty = parcel weight unit)
            precision: Fractional digits to keep (None = configured default)

        Returns:
            VolumetricWeightResult

        Raises:
            InvalidDivisorError, InvalidPrecisionError, UnsupportedConversionError
        """
        divisor_value = self.validate_divisor(divisor)
        decimal_places = self.resolve_precision(precision)

        if not target_weight_unit:
            target_weight_unit = parcel.weight_unit

        from_size = parcel.size_unit.value
        from_weight = parcel.weight_unit.value
        to_size = _canonical_token(from_size, target_size_unit)
        to_weight = _canonical_token(from_weight, target_weight_unit)

        size_factor = resolve_factor(from_size, target_size_unit, self.size_factors)

        steps: List[CalculationStep] = []

        with localcontext() as ctx:
            ctx.prec = WORKING_PRECISION

            volume = parcel.volume
            steps.append(CalculationStep(
                step_number=len(steps) + 1,
                description="volume",
                from_unit=from_size,
                to_unit=from_size,
                factor_source=FactorSource.DIMENSIONS,
                value=volume,
                formula=f"{parcel.length} × {parcel.width} × {parcel.height} = {volume}"
            ))

            scaled_volume = volume * size_factor ** 3
            steps.append(CalculationStep(
                step_number=len(steps) + 1,
                description="volume in target size unit",
                from_unit=from_size,
                to_unit=to_size,
                factor=size_factor,
                factor_source=FactorSource.IDENTITY if size_factor == 1 else FactorSource.SIZE_TABLE,
                value=scaled_volume,
                formula=f"{volume} × {size_factor}³ = {scaled_volume}"
            ))

            weight_in_from_unit = scaled_volume / divisor_value
            steps.append(CalculationStep(
                step_number=len(steps) + 1,
                description="weight in parcel weight unit",
                from_unit=to_size,
                to_unit=from_weight,
                factor=divisor_value,
                factor_source=FactorSource.DIVISOR,
                value=weight_in_from_unit,
                formula=f"{scaled_volume} ÷ {divisor_value} = {weight_in_from_unit}"
            ))

            weight_factor = resolve_factor(from_weight, target_weight_unit, self.weight_factors)

            raw_weight = weight_in_from_unit * weight_factor
            steps.append(CalculationStep(
                step_number=len(steps) + 1,
                description="weight in target weight unit",
                from_unit=from_weight,
                to_unit=to_weight,
                factor=weight_factor,
                factor_source=FactorSource.IDENTITY if weight_factor == 1 else FactorSource.WEIGHT_TABLE,
                value=raw_weight,
                formula=f"{weight_in_from_unit} × {weight_factor} = {raw_weight}"
            ))

        rounded_weight, was_rounded = self.apply_precision(raw_weight, decimal_places)
        steps.append(CalculationStep(
            step_number=len(steps) + 1,
            description="rounded weight",
            from_unit=to_weight,
            to_unit=to_weight,
            factor_source=FactorSource.PRECISION,
            value=rounded_weight,
            formula=f"round_half_up({raw_weight}, {decimal_places}) = {rounded_weight}"
        ))

        logger.debug(
            f"Volumetric weight {parcel.length}x{parcel.width}x{parcel.height} {from_size} "
            f"/ {divisor_value} ({to_size}) = {rounded_weight} {to_weight}"
        )

        return VolumetricWeightResult(
            weight=float(rounded_weight),
            rounded_weight=rounded_weight,
            raw_weight=raw_weight,
            size_unit=to_size,
            weight_unit=to_weight,
            divisor=divisor_value,
            precision=decimal_places,
            was_rounded=was_rounded,
            breakdown=CalculationBreakdown(steps=steps, total_steps=len(steps)),
            calculation_version=self.version
        )

    def calculate(
        self,
        parcel: Parcel,
        target_size_unit: UnitLike,
        divisor: Any,
        target_weight_unit: Optional[UnitLike] = None,
        precision: Optional[int] = None
    ) -> float:
        """Volumetric weight as a float (see calculate_with_breakdown)"""
        return self.calculate_with_breakdown(
            parcel,
            target_size_unit,
            divisor,
            target_weight_unit=target_weight_unit,
            precision=precision
        ).weight

    def calculate_billable_weight(
        self,
        parcel: Parcel,
        actual_weight: Any,
        target_size_unit: UnitLike,
        divisor: Any,
        target_weight_unit: Optional[UnitLike] = None,
        precision: Optional[int] = None
    ) -> BillableWeightResult:
        """
        Billable weight = max(actual weight, volumetric weight).

        actual_weight is expressed in the target weight unit (the parcel's
        weight unit when target_weight_unit is omitted) and is rounded with
        the same precision as the volumetric weight.

        Raises:
            InvalidWeightError: If actual_weight is negative or not a number
            plus everything calculate_with_breakdown raises
        """
        actual_value = _to_decimal(actual_weight)
        if actual_value is None or actual_value < 0:
            raise InvalidWeightError(actual_weight)

        volumetric = self.calculate_with_breakdown(
            parcel,
            target_size_unit,
            divisor,
            target_weight_unit=target_weight_unit,
            precision=precision
        )
        rounded_actual, _ = self.apply_precision(actual_value, volumetric.precision)
        rounded_volumetric = volumetric.rounded_weight

        uses_volumetric_weight = rounded_volumetric > rounded_actual
        billable = rounded_volumetric if uses_volumetric_weight else rounded_actual

        return BillableWeightResult(
            actual_weight=float(rounded_actual),
            volumetric_weight=volumetric.weight,
            billable_weight=float(billable),
            uses_volumetric_weight=uses_volumetric_weight,
            weight_unit=volumetric.weight_unit,
            volumetric=volumetric
        )


# ==================== MODULE SHORTCUTS ====================

_default_engine = VolumetricWeightEngine()


def calculate_volumetric_weight(
    parcel: Parcel,
    target_size_unit: UnitLike,
    divisor: Any,
    target_weight_unit: Optional[UnitLike] = None,
    precision: Optional[int] = None
) -> float:
    """Volumetric weight using the default conversion tables"""
    return _default_engine.calculate(
        parcel,
        target_size_unit,
        divisor,
        target_weight_unit=target_weight_unit,
        precision=precision
    )
