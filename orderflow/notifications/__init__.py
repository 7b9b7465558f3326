from orderflow.notifications.channels import (
    EmailMessage,
    EmailSender,
    FakeFiscalReceiptClient,
    FiscalReceipt,
    FiscalReceiptClient,
    HttpEmailSender,
    HttpFiscalReceiptClient,
    LogEmailSender,
    build_email_sender,
    build_fiscal_receipt_client,
)
from orderflow.notifications.dispatcher import NotificationDispatcher
from orderflow.notifications.log import NotificationLogStore, NotificationRecord

__all__ = [
    "EmailMessage",
    "EmailSender",
    "FakeFiscalReceiptClient",
    "FiscalReceipt",
    "FiscalReceiptClient",
    "HttpEmailSender",
    "HttpFiscalReceiptClient",
    "LogEmailSender",
    "NotificationDispatcher",
    "NotificationLogStore",
    "NotificationRecord",
    "build_email_sender",
    "build_fiscal_receipt_client",
]
