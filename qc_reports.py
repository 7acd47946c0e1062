"""
QC Records - report rendering
CSV text, Excel workbooks (openpyxl) and PDF documents (reportlab).
"""

import io
from datetime import datetime
from xml.sax.saxutils import escape

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from qc_logging import get_logger

logger = get_logger("qc.reports")

COMPANY_NAME = 'QC Records'

PRODUCTION_COLUMNS = [
    ('Line', 'line_no'),
    ('Part No', 'part_number'),
    ('Shift', 'shift'),
    ('Operator', 'operator_name'),
    ('Produced', 'total_produced'),
    ('Good', 'good_qty'),
    ('Rework', 'rework_qty'),
    ('Scrap', 'scrap_qty'),
    ('Rework Good', 'rework_good_qty'),
    ('Rework Scrap', 'rework_scrap_qty'),
    ('Final Good', 'final_good_qty'),
    ('Final Reject', 'final_reject_qty'),
    ('Good %', 'good_pct'),
]

DEFECT_COLUMNS = [
    ('Line', 'line_no'),
    ('Part No', 'part_number'),
    ('Shift', 'shift'),
    ('Defect Code', 'defect_code'),
    ('Defect', 'defect_name'),
    ('Type', 'defect_type'),
    ('Qty', 'quantity'),
    ('Measurement', 'measurement'),
    ('Spec', 'spec_value'),
    ('Rework Result', 'rework_result'),
]


def _text(value):
    if value is None:
        return ''
    if isinstance(value, float):
        return f'{value:g}'
    return str(value)


# =============================================================================
# CSV
# =============================================================================

def csv_text(header, rows):
    """Build CSV text with every field quoted."""
    output = io.StringIO()
    output.write(','.join(f'"{h}"' for h in header) + '\n')
    for row in rows:
        cells = [_text(v).replace('"', '""').replace('\n', ' ') for v in row]
        output.write(','.join(f'"{v}"' for v in cells) + '\n')
    return output.getvalue()


# =============================================================================
# Excel
# =============================================================================

HEADER_FILL = PatternFill(start_color='D9D9D9', end_color='D9D9D9', fill_type='solid')
THIN = Side(style='thin', color='000000')
BORDER = Border(left=THIN, right=THIN, top=THIN, bottom=THIN)


def _write_table(ws, start_row, columns, rows):
    """Write a header row plus data rows. Returns the next free row."""
    for col, (label, _) in enumerate(columns, start=1):
        cell = ws.cell(row=start_row, column=col, value=label)
        cell.font = Font(bold=True)
        cell.fill = HEADER_FILL
        cell.border = BORDER
        cell.alignment = Alignment(horizontal='center')

    row_num = start_row + 1
    for row in rows:
        for col, (_, key) in enumerate(columns, start=1):
            value = row.get(key)
            cell = ws.cell(row=row_num, column=col, value=value if value is not None else '')
            cell.border = BORDER
        row_num += 1

    for col, (label, key) in enumerate(columns, start=1):
        width = max([len(label)] + [len(_text(r.get(key))) for r in rows])
        ws.column_dimensions[get_column_letter(col)].width = min(width + 2, 40)
    return row_num


def production_workbook(report):
    """Daily production report as an .xlsx file in memory."""
    wb = Workbook()
    ws = wb.active
    ws.title = 'Production'

    ws['A1'] = f'{COMPANY_NAME} - Daily Production Report'
    ws['A1'].font = Font(bold=True, size=14)
    ws['A2'] = f"Date: {report['date']}"
    ws['A3'] = f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M')}"

    next_row = _write_table(ws, 5, PRODUCTION_COLUMNS, report['records'])

    totals = report['totals']
    ws.cell(row=next_row, column=1, value='TOTAL').font = Font(bold=True)
    for col, (_, key) in enumerate(PRODUCTION_COLUMNS, start=1):
        if key in totals:
            cell = ws.cell(row=next_row, column=col, value=totals[key])
            cell.font = Font(bold=True)
            cell.border = BORDER

    defects = wb.create_sheet('Defects')
    defects['A1'] = 'Defect Detail'
    defects['A1'].font = Font(bold=True, size=12)
    _write_table(defects, 3, DEFECT_COLUMNS, report['defects'])

    buffer = io.BytesIO()
    wb.save(buffer)
    buffer.seek(0)
    logger.info("Production workbook built for %s (%s rows)", report['date'], len(report['records']))
    return buffer


def rows_workbook(title, header, rows):
    """Plain single-sheet workbook for list exports."""
    wb = Workbook()
    ws = wb.active
    ws.title = title[:31]
    columns = [(h, i) for i, h in enumerate(header)]
    dict_rows = [{i: v for i, v in enumerate(r)} for r in rows]
    _write_table(ws, 1, columns, dict_rows)
    buffer = io.BytesIO()
    wb.save(buffer)
    buffer.seek(0)
    return buffer


# =============================================================================
# PDF
# =============================================================================

GRID_STYLE = TableStyle([
    ('BACKGROUND', (0, 0), (-1, 0), colors.lightgrey),
    ('GRID', (0, 0), (-1, -1), 0.5, colors.black),
    ('FONTSIZE', (0, 0), (-1, -1), 8),
    ('VALIGN', (0, 0), (-1, -1), 'MIDDLE'),
])


def _cell(value, styles):
    return Paragraph(escape(_text(value)), styles['BodyText'])


def _build_pdf(title, meta, sections, pagesize=A4):
    """
    Render a titled document.

    meta is a list of (label, value) pairs printed under the title;
    sections is a list of (heading, header, rows) tables.
    """
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=pagesize, title=title,
                            leftMargin=30, rightMargin=30, topMargin=30, bottomMargin=30)
    styles = getSampleStyleSheet()
    elements = [Paragraph(f'<b>{escape(COMPANY_NAME)} - {escape(title)}</b>', styles['Title'])]

    for label, value in meta:
        elements.append(Paragraph(f'<b>{escape(label)}:</b> {escape(_text(value))}', styles['Normal']))
    elements.append(Spacer(1, 12))

    for heading, header, rows in sections:
        if heading:
            elements.append(Paragraph(f'<b>{escape(heading)}</b>', styles['Heading3']))
        if not rows:
            elements.append(Paragraph('No records.', styles['Normal']))
            elements.append(Spacer(1, 8))
            continue
        data = [[_cell(h, styles) for h in header]]
        data.extend([[_cell(v, styles) for v in row] for row in rows])
        table = Table(data, repeatRows=1)
        table.setStyle(GRID_STYLE)
        elements.append(table)
        elements.append(Spacer(1, 12))

    elements.append(Paragraph(f"Generated {datetime.now().strftime('%Y-%m-%d %H:%M')}",
                              styles['Italic']))
    doc.build(elements)
    buffer.seek(0)
    return buffer


def production_pdf(report):
    """Daily production report on landscape A4."""
    totals = report['totals']
    meta = [
        ('Date', report['date']),
        ('Total produced', totals.get('total_produced', 0)),
        ('Final good', totals.get('final_good_qty', 0)),
        ('Final reject', totals.get('final_reject_qty', 0)),
        ('Good %', totals.get('good_pct', 0)),
    ]
    sections = [
        ('Production', [c[0] for c in PRODUCTION_COLUMNS],
         [[r.get(k) for _, k in PRODUCTION_COLUMNS] for r in report['records']]),
        ('Defects', [c[0] for c in DEFECT_COLUMNS],
         [[r.get(k) for _, k in DEFECT_COLUMNS] for r in report['defects']]),
    ]
    logger.info("Production PDF built for %s", report['date'])
    return _build_pdf('Daily Production Report', meta, sections, pagesize=landscape(A4))


def material_inspection_pdf(inspection, attachments, stats):
    meta = [
        ('Inspection No', inspection['inspection_number']),
        ('Material', f"{inspection['material_type']} / {inspection['material_grade']}"),
        ('Batch', inspection['batch_number']),
        ('Supplier', inspection['supplier_name']),
        ('Maker', inspection['maker_mat']),
        ('Receipt date', inspection['receipt_date']),
        ('Invoice', inspection['invoice_number']),
        ('Certificate', inspection['cer_number']),
        ('Inspector', inspection['inspector']),
        ('Result', (inspection['overall_result'] or '').upper()),
    ]
    if inspection['material_type'] == 'rod':
        header = ['Rod', 'Diameter', 'Length', 'Weight']
        rows = [[r.get('rodNumber'), r.get('diameter'), r.get('length'), r.get('weight')]
                for r in inspection['rod_inspections']]
    else:
        header = ['Bar', 'OD', 'Length', 'Surface']
        rows = [[r.get('barNumber'), r.get('odMeasurement'), r.get('lengthMeasurement'),
                 r.get('surfaceCondition')] for r in inspection['bar_inspections']]

    stat_rows = [[field, s['count'], s['average'], s['std_dev'], s['min'], s['max']]
                 for field, s in stats.items() if isinstance(s, dict)]
    sections = [
        ('Readings', header, rows),
        ('Statistics', ['Field', 'n', 'Average', 'Std dev', 'Min', 'Max'], stat_rows),
        ('Attachments', ['File', 'Type'], [[a['file_name'], a['file_type']] for a in attachments]),
    ]
    return _build_pdf('Material Receiving Inspection', meta, sections)


def chemical_test_pdf(test, elements):
    meta = [
        ('Test No', test['test_number']),
        ('Date', test['inspection_date']),
        ('Grade', test['material_grade']),
        ('Heat No', test['heat_no']),
        ('Certificate', test['cert_no']),
        ('Supplier', test['supplier']),
        ('Standard', test['standard']),
        ('Result', (test['overall_result'] or '').upper()),
        ('Approved', test['approved_at'] or 'not approved'),
    ]
    rows = [[e['element_symbol'], e['element_name'], e['measured_value'],
             e['specification_min'], e['specification_max'], e['unit'],
             (e['result'] or '').upper()] for e in elements]
    sections = [('Elements', ['Symbol', 'Element', 'Measured', 'Min', 'Max', 'Unit', 'Result'], rows)]
    return _build_pdf('Chemical Composition Test', meta, sections)


def hardness_pdf(header, measurements, stats):
    meta = [
        ('Report No', header['report_no']),
        ('Part', f"{header['part_no']} {header['part_name'] or ''}"),
        ('Material', header['material']),
        ('Spec', f"{_text(header['spec_min'])} - {_text(header['spec_max'])} {header['scale'] or ''}"),
        ('Lot', header['lot_no']),
        ('Heat No (supplier)', header['heat_no_supplier']),
        ('Inspector', header['inspector_name']),
        ('Average', header['average_value']),
        ('Std dev', stats['std_dev']),
        ('Result', header['overall_status']),
    ]
    rows = [[m['piece_no'], m['point_type'], m['measure_value'], m['status']] for m in measurements]
    sections = [('Measurements', ['Piece', 'Point', 'Value', 'Status'], rows)]
    return _build_pdf('Hardness Inspection', meta, sections)
