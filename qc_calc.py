"""
QC Records - calculation rules
Statistics over readings and the pass/fail rules for each inspection type.
"""

import calendar
import math
import re
from datetime import date, datetime


# =============================================================================
# Reading Helpers
# =============================================================================

def to_number(value):
    """Coerce a reading to float. Returns None for blanks and garbage."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return None if math.isnan(value) else float(value)
    text = str(value).strip()
    if not text:
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    return None if math.isnan(number) else number


def numeric_values(values):
    """Keep only the readings that parse as numbers."""
    result = []
    for v in values or []:
        number = to_number(v)
        if number is not None:
            result.append(number)
    return result


# =============================================================================
# Statistics
# =============================================================================

def average(values, places=None):
    nums = numeric_values(values)
    if not nums:
        return 0.0
    avg = sum(nums) / len(nums)
    return round(avg, places) if places is not None else avg


def std_dev(values, places=None):
    """Sample standard deviation (n - 1). 0 for fewer than two readings."""
    nums = numeric_values(values)
    if len(nums) < 2:
        return 0.0
    avg = sum(nums) / len(nums)
    variance = sum((v - avg) ** 2 for v in nums) / (len(nums) - 1)
    result = math.sqrt(variance)
    return round(result, places) if places is not None else result


def value_min(values):
    nums = numeric_values(values)
    return min(nums) if nums else 0.0


def value_max(values):
    nums = numeric_values(values)
    return max(nums) if nums else 0.0


def value_range(values):
    nums = numeric_values(values)
    return (max(nums) - min(nums)) if nums else 0.0


def pass_rate(total, passed, places=1):
    """Percentage of passed over total; 0.0 when there is nothing to rate."""
    if not total:
        return 0.0
    return round(passed / total * 100, places)


def percent(part, whole, places=2):
    if not whole:
        return 0.0
    return round((part or 0) / whole * 100, places)


def summarize(values, places=3):
    """Summary block used by every statistics endpoint."""
    nums = numeric_values(values)
    return {
        'count': len(nums),
        'average': round(average(nums), places),
        'std_dev': round(std_dev(nums), places),
        'min': round(value_min(nums), places),
        'max': round(value_max(nums), places),
        'range': round(value_range(nums), places),
    }


def within_limits(value, lower=None, upper=None):
    """Return 'pass' / 'fail' for a reading, or None when there is no limit."""
    number = to_number(value)
    lower = to_number(lower)
    upper = to_number(upper)
    if lower is None and upper is None:
        return None
    if number is None:
        return 'fail'
    if lower is not None and number < lower:
        return 'fail'
    if upper is not None and number > upper:
        return 'fail'
    return 'pass'


def evaluate_readings(values, lower=None, upper=None):
    """
    Check every reading against a lower/upper window.

    Non-numeric readings are dropped. Returns per-reading verdicts, the
    pass/fail counts, the pass rate and a summarize() block. 'valid' is True
    only when there is at least one reading and all of them pass.
    """
    nums = numeric_values(values)
    details = [{'index': index, 'value': v, 'result': within_limits(v, lower, upper) or 'pass'}
               for index, v in enumerate(nums, start=1)]
    passed = sum(1 for d in details if d['result'] == 'pass')
    return {
        'valid': bool(details) and passed == len(details),
        'total': len(details),
        'passCount': passed,
        'failCount': len(details) - passed,
        'passRate': pass_rate(len(details), passed),
        'details': details,
        'statistics': summarize(nums),
    }


def process_capability(values, lower, upper):
    """Cp / Cpk for readings against a two-sided spec. None if undefined."""
    nums = numeric_values(values)
    lower = to_number(lower)
    upper = to_number(upper)
    if len(nums) < 2 or lower is None or upper is None:
        return None
    sigma = std_dev(nums)
    if sigma == 0:
        return None
    mean = average(nums)
    cp = (upper - lower) / (6 * sigma)
    cpk = min((upper - mean) / (3 * sigma), (mean - lower) / (3 * sigma))
    return {
        'cp': round(cp, 3),
        'cpk': round(cpk, 3),
        'mean': round(mean, 3),
        'std_dev': round(sigma, 3),
        'capable': cpk >= 1.33,
    }


# =============================================================================
# Material Receiving (bar / rod readings)
# =============================================================================

BAR_FIELDS = ('odMeasurement', 'lengthMeasurement')
ROD_FIELDS = ('diameter', 'length', 'weight')


def material_statistics(material_type, bar_inspections, rod_inspections, limits=None):
    """
    Per-field summary for the bar or rod readings of one receipt.

    limits maps a field to a (lower, upper) window; those fields also get an
    'evaluation' block from evaluate_readings().
    """
    if material_type == 'rod':
        rows, fields = rod_inspections or [], ROD_FIELDS
    else:
        rows, fields = bar_inspections or [], BAR_FIELDS
    limits = limits or {}
    stats = {}
    for field in fields:
        readings = [r.get(field) for r in rows if isinstance(r, dict)]
        stats[field] = summarize(readings)
        if field in limits:
            lower, upper = limits[field]
            stats[field]['evaluation'] = evaluate_readings(readings, lower, upper)
    stats['pieces'] = len(rows)
    return stats


# =============================================================================
# Hardness
# =============================================================================

def hardness_status(value, spec_min, spec_max):
    """PASS / FAIL for one reading, PENDING without a complete spec."""
    lo = to_number(spec_min)
    hi = to_number(spec_max)
    if lo is None or hi is None:
        return 'PENDING'
    number = to_number(value)
    if number is None:
        return 'FAIL'
    return 'PASS' if lo <= number <= hi else 'FAIL'


def evaluate_hardness(measurements, spec_min, spec_max):
    """
    Grade a set of hardness readings.

    Returns (measurements, average, overall). Each measurement dict gets a
    'status'. Overall is FAIL when any piece fails, PASS when the average
    sits inside the spec, PENDING when there is no spec or no readings.
    """
    graded = []
    for index, m in enumerate(measurements or [], start=1):
        value = to_number(m.get('value', m.get('measure_value')))
        if value is None:
            continue
        graded.append({
            'piece_no': int(m.get('piece_no') or m.get('pieceNo') or index),
            'value': value,
            'point_type': normalize_point_type(m.get('point_type') or m.get('pointType')),
            'status': hardness_status(value, spec_min, spec_max),
        })

    values = [m['value'] for m in graded]
    avg = average(values, places=2) if values else None

    if any(m['status'] == 'FAIL' for m in graded):
        overall = 'FAIL'
    elif avg is None or to_number(spec_min) is None or to_number(spec_max) is None:
        overall = 'PENDING'
    elif to_number(spec_min) <= avg <= to_number(spec_max):
        overall = 'PASS'
    else:
        overall = 'FAIL'
    return graded, avg, overall


def normalize_point_type(value):
    if value and str(value).strip().lower() == 'core':
        return 'Core'
    return 'Surface'


# =============================================================================
# Chemical Composition
# =============================================================================

ELEMENT_NAMES = {
    'c': 'carbon',
    'si': 'silicon',
    'mn': 'manganese',
    'p': 'phosphorus',
    's': 'sulfur',
    'cu': 'copper',
    'ni': 'nickel',
    'cr': 'chromium',
    'mo': 'molybdenum',
}


def match_standard(symbol, standards):
    """Find the quality standard row whose parameter names this element."""
    symbol = (symbol or '').strip().lower()
    if not symbol:
        return None
    full_name = ELEMENT_NAMES.get(symbol)
    pattern = re.compile(r'\b' + re.escape(symbol) + r'\b', re.IGNORECASE)
    for standard in standards:
        name = (standard['parameter_name'] or '').strip().lower()
        if name == symbol:
            return standard
        if full_name and full_name in name:
            return standard
        if pattern.search(name):
            return standard
    return None


def evaluate_elements(elements, standards):
    """
    Grade element results against the grade's chemical standards.

    Returns (elements, overall). Matched elements carry the spec window and
    'pass'/'fail'; unmatched ones stay 'pending'. Overall is 'fail' if any
    element fails, 'pending' when nothing matched.
    """
    graded = []
    matched = 0
    failed = False
    for element in elements:
        row = dict(element)
        standard = match_standard(row.get('element_symbol'), standards)
        if standard is None:
            row['result'] = 'pending'
            graded.append(row)
            continue
        matched += 1
        row['specification_min'] = standard['min_value']
        row['specification_max'] = standard['max_value']
        measured = to_number(row.get('measured_value'))
        if measured is None:
            # a matched element without a reading is not held against the test
            row['result'] = 'pass'
        else:
            row['result'] = within_limits(measured, standard['min_value'], standard['max_value']) or 'pass'
        if row['result'] == 'fail':
            failed = True
        graded.append(row)

    if failed:
        overall = 'fail'
    elif matched == 0:
        overall = 'pending'
    else:
        overall = 'pass'
    return graded, overall


# =============================================================================
# Calibration
# =============================================================================

def parse_date(value):
    """Accept date, datetime or ISO 'YYYY-MM-DD' strings."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(str(value)[:10], '%Y-%m-%d').date()


def add_months(start, months):
    """Move a date by whole months, clamping to the end of shorter months."""
    start = parse_date(start)
    month_index = start.month - 1 + int(months)
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def calibration_verdict(standard_value, measured_value, acceptance):
    """Return (error, 'PASS' | 'FAIL') for one calibration point."""
    standard = to_number(standard_value)
    measured = to_number(measured_value)
    limit = to_number(acceptance)
    if standard is None or measured is None or limit is None:
        raise ValueError('standard_value, measured_value and acceptance must be numeric')
    # Rounded so 10.05 - 10.00 compares equal to a 0.05 limit.
    error = round(measured - standard, 6)
    return error, ('PASS' if abs(error) <= limit else 'FAIL')


def due_status(next_date, today=None, due_days=30):
    """Calibration due state: 'overdue', 'due_soon' or 'ok'."""
    next_date = parse_date(next_date)
    if next_date is None:
        return 'ok'
    today = parse_date(today) or date.today()
    if next_date < today:
        return 'overdue'
    if (next_date - today).days <= due_days:
        return 'due_soon'
    return 'ok'


# =============================================================================
# KPI
# =============================================================================

DISPOSITIONS = ('GOOD', 'REWORK', 'SCRAP')
PRIORITY_ORDER = {'critical': 1, 'high': 2, 'medium': 3, 'low': 4}


def detect_shift(moment=None):
    """Day shift A runs 06:00-17:59, everything else is shift B."""
    hour = (moment or datetime.now()).hour
    return 'A' if 6 <= hour < 18 else 'B'


def ppm(defect_qty, shipped_qty):
    shipped = to_number(shipped_qty) or 0
    if shipped <= 0:
        return 0.0
    return round((to_number(defect_qty) or 0) / shipped * 1000000, 2)


def minutes_between(start, end):
    """Elapsed minutes between two timestamps, one decimal."""
    if isinstance(start, str):
        start = datetime.fromisoformat(start)
    if isinstance(end, str):
        end = datetime.fromisoformat(end)
    return round((end - start).total_seconds() / 60, 1)


def production_totals(row):
    """Final good / reject figures for a daily production summary row."""
    total = row.get('total_produced') or 0
    final_good = (row.get('good_qty') or 0) + (row.get('rework_good_qty') or 0)
    final_reject = (row.get('scrap_qty') or 0) + (row.get('rework_scrap_qty') or 0)
    return {
        'final_good_qty': final_good,
        'final_reject_qty': final_reject,
        'good_pct': percent(final_good, total),
        'reject_pct': percent(final_reject, total),
        'rework_pct': percent(row.get('rework_qty') or 0, total),
    }


def pareto(rows, qty_key='defect_qty'):
    """Sort rows by quantity and attach share and cumulative percentages."""
    ordered = sorted(rows, key=lambda r: r.get(qty_key) or 0, reverse=True)
    total = sum(r.get(qty_key) or 0 for r in ordered)
    running = 0
    result = []
    for r in ordered:
        running += r.get(qty_key) or 0
        item = dict(r)
        item['share_pct'] = percent(r.get(qty_key) or 0, total)
        item['cumulative_pct'] = percent(running, total)
        result.append(item)
    return result
