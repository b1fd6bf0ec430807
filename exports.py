# Accounting export rendering - CSV and Excel
import csv
import io
import logging

import openpyxl
from openpyxl.styles import Font, PatternFill, Alignment
from openpyxl.utils import get_column_letter

logger = logging.getLogger(__name__)

# (row key, column header)
ACCOUNTING_COLUMNS = [
    ('invoice_number', '發票號碼'),
    ('issued_at', '開立日期'),
    ('buyer_name', '買受人'),
    ('buyer_tax_id', '買受人統編'),
    ('pre_tax_total', '未稅金額'),
    ('tax_total', '稅額'),
    ('grand_total', '總計'),
    ('status', '狀態'),
]


def export_filename(year_month, extension):
    return f"accounting_{year_month}.{extension}"


def render_export_csv(rows):
    """Render accounting rows as CSV text with a header line"""
    output = io.StringIO()
    writer = csv.writer(output)

    writer.writerow([header for _, header in ACCOUNTING_COLUMNS])
    for row in rows:
        writer.writerow([row.get(key, '') for key, _ in ACCOUNTING_COLUMNS])

    csv_content = output.getvalue()
    output.close()
    return csv_content


def render_export_workbook(rows, year_month, company=None):
    """
    Render accounting rows as an .xlsx workbook

    Layout: title on row 1, seller details on row 2, headers on row 3, data from row 4.
    Amount columns are written as numbers so they can be summed in the spreadsheet.

    Returns:
        io.BytesIO positioned at the start of the workbook
    """
    company = company or {}

    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = f"發票 {year_month}"

    last_column = get_column_letter(len(ACCOUNTING_COLUMNS))

    ws.merge_cells(f'A1:{last_column}1')
    title_cell = ws['A1']
    title_cell.value = f"發票明細 - {year_month[:4]} 年 {year_month[4:6]}-{year_month[6:8]} 月"
    title_cell.font = Font(color='FFFFFF', size=16, bold=True)
    title_cell.alignment = Alignment(horizontal='center')
    title_cell.fill = PatternFill(start_color='366092', end_color='366092', fill_type='solid')

    ws.merge_cells(f'A2:{last_column}2')
    ws['A2'].value = f"{company.get('company_name', '')} 統一編號：{company.get('company_tax_id', '')}"

    for col, (_, header) in enumerate(ACCOUNTING_COLUMNS, 1):
        cell = ws.cell(row=3, column=col)
        cell.value = header
        cell.font = Font(bold=True)
        cell.fill = PatternFill(start_color='D9E2F3', end_color='D9E2F3', fill_type='solid')

    amount_keys = {'pre_tax_total', 'tax_total', 'grand_total'}
    row_num = 4
    for row in rows:
        for col, (key, _) in enumerate(ACCOUNTING_COLUMNS, 1):
            value = row.get(key, '')
            if key in amount_keys and value != '':
                value = float(value)
            ws.cell(row=row_num, column=col, value=value)
        row_num += 1

    output = io.BytesIO()
    wb.save(output)
    output.seek(0)

    logger.debug(f"Accounting workbook for {year_month} rendered with {len(rows)} rows")
    return output
