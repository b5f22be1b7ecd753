"""
Email builders for sale receipts, PDF reports and debug pings
"""
import base64
import binascii
from email.message import EmailMessage
from email.utils import make_msgid
from html import escape
from typing import Iterable, Optional

from models.notifications import CartItem, SaleData
from utils.errors import ValidationError

FOOTER = """
      <p>Thank you for using InventoryMW.</p>
      <p><em>This is an automated notification. Please do not reply.</em></p>
"""


def format_mk(value) -> str:
    """Malawi kwacha with thousands separators: 12500 -> 'MK 12,500'."""
    number = float(value)
    if number.is_integer():
        return f"MK {int(number):,}"
    return f"MK {number:,.2f}"


def _message(to: str, subject: str, html: Optional[str] = None, text: Optional[str] = None, sender: Optional[str] = None) -> EmailMessage:
    message = EmailMessage()
    message["To"] = to
    message["Subject"] = subject
    message["Message-ID"] = make_msgid(domain="inventorymw")
    if sender:
        message["From"] = sender
    message.set_content(text or "This message requires an HTML-capable mail client.")
    if html:
        message.add_alternative(html, subtype="html")
    return message


def sale_receipt(to: str, sale: SaleData, items: Iterable[CartItem], total_amount: float) -> EmailMessage:
    rows = "".join(
        f"""
        <tr>
          <td>{escape(str(item.item_name))}</td>
          <td>{escape(str(item.quantity))}</td>
          <td>{format_mk(item.price)}</td>
          <td>{format_mk(item.total)}</td>
        </tr>"""
        for item in items
    )
    sale_id = escape(str(sale.Sale_id))
    sale_date = escape(str(sale.Saledate))
    html = f"""
      <h2>Sale Notification</h2>
      <p>Dear User,</p>
      <p>A new sale has been completed in your inventory system.</p>
      <p><strong>Sale ID:</strong> {sale_id}</p>
      <p><strong>Date:</strong> {sale_date}</p>
      <p><strong>Total Amount:</strong> {format_mk(total_amount)}</p>
      <p><strong>Items Sold:</strong></p>
      <table border="1" cellpadding="8" cellspacing="0" style="border-collapse: collapse; width: 100%;">
        <thead>
          <tr style="background-color: #f2f2f2;">
            <th>Item Name</th>
            <th>Quantity</th>
            <th>Price</th>
            <th>Total</th>
          </tr>
        </thead>
        <tbody>{rows}
        </tbody>
      </table>
{FOOTER}"""
    text = f"Sale {sale.Sale_id} completed on {sale.Saledate}. Total: {format_mk(total_amount)}."
    return _message(to, f"New Sale Completed - {sale.Saledate}", html=html, text=text)


def decode_pdf(pdf_base64: str) -> bytes:
    """Accept raw base64 or a data URL ('data:application/pdf;base64,...')."""
    payload = pdf_base64.split("base64,", 1)[1] if "base64," in pdf_base64 else pdf_base64
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("pdfBase64 is not valid base64", details={"pdfBase64": True})


def pdf_report(to: str, filename: str, pdf_base64: str) -> EmailMessage:
    html = f"""
      <h2>Sales and Expense Report</h2>
      <p>Dear User,</p>
      <p>Please find attached the Sales and Expense Report for the selected period.</p>
{FOOTER}"""
    message = _message(to, f"Sales and Expense Report - {filename}", html=html,
                       text="Please find attached the Sales and Expense Report for the selected period.")
    message.add_attachment(decode_pdf(pdf_base64), maintype="application", subtype="pdf", filename=filename)
    return message


def debug_ping(to: str, user_id: str) -> EmailMessage:
    html = f"""
      <h2>Debug Email</h2>
      <p>This is a test email to verify the mail configuration.</p>
      <p>User ID: {escape(user_id)}</p>
      <p>Email: {escape(to)}</p>
      <p>Thank you for using InventoryMW.</p>
"""
    return _message(to, "Debug Email from InventoryMW", html=html)


def smtp_check(to: str) -> EmailMessage:
    return _message(to, "Test Email from InventoryMW",
                    text="This is a test email to verify the mail configuration.")
