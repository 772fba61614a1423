"""Enumerations and identifiers shared across Pedidos ERP modules.

Table names, field names and status values mirror the labels used in the
workbook so that the data access layer (DAL), the business logic layer (BLL)
and the CLI agree on a single spelling for every column.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Hard limit on records per update call enforced by the store.
STORE_BATCH_CAP = 50

# Group label used for lines that have not been assigned an order number yet.
NO_ORDER_NUMBER = "Sin No."

# Column holding the record identifier on every table sheet.
ID_FIELD = "ID"


class TableName(str, Enum):
    """Enumerate the workbook sheets that act as record tables."""

    ORDER_LINES = "Líneas de Pedido"
    ORDERS = "Pedidos"
    PAYMENTS = "Pagos"
    PAYMENT_METHODS = "Métodos de Pago Admin"


# Sheet listing the allowed values of enum-like fields (Tabla, Campo, Valor).
OPTIONS_SHEET = "Opciones"


class LineField(str, Enum):
    """Columns of the ``Líneas de Pedido`` table."""

    STATUS = "Estatus"
    ORDER_NUMBER = "No. de Pedido"
    BRAND = "Línea"
    MODEL = "Modelo"
    DESCRIPTION = "Descripción"
    COST = "Costo"
    HISTORY = "Historial de Estatus"


class OrderField(str, Enum):
    """Columns of the ``Pedidos`` table."""

    ORDER_NUMBER = "No. de Pedido"
    STATUS = "Estatus"
    ORDER_DATE = "Fecha Pedido"
    BRAND = "MARCA"
    EXTRA_COST = "Costos Adicionales"
    EXTRA_EXPENSES = "Gastos Adicionales"
    HISTORY = "Historial de Estatus"
    LINES = "Productos"


class PaymentField(str, Enum):
    """Columns of the ``Pagos`` table."""

    ORDER = "Pedido"
    METHOD = "Método de Pago Admin"
    AMOUNT = "Abono"
    PAYMENT_ID = "ID Pago"
    PAYMENT_DATE = "Fecha Pago"
    DESCRIPTION = "Descripción"
    NOTES = "Notas"
    PAYER = "Quién Realizó Pago"
    REFERENCE = "Número de Referencia"
    CARD = "Tarjeta de Débito"


class PaymentMethodField(str, Enum):
    """Columns of the ``Métodos de Pago Admin`` table."""

    NAME = "Nombre"
    TYPE = "TIPO"


class Status(str, Enum):
    """Workflow statuses shared by order lines and orders."""

    OPEN = "Abierto"
    AWAITING_CONFIRMATION = "Confirmar y Monitorear"
    REQUESTED = "Solicitado"
    SENT = "Enviado"
    PENDING_PAYMENT = "Pendiente de Pago"
    PARTIALLY_PAID = "Pago Incompleto"
    PAID = "Pagado"


# Statuses a settlement or payment may leave behind on an order or line.
PAYMENT_STATUSES: tuple[Status, ...] = (
    Status.PAID,
    Status.PENDING_PAYMENT,
    Status.PARTIALLY_PAID,
)

# Orders listed on the requested-orders board.
REQUESTED_ORDER_STATUSES: tuple[Status, ...] = (
    Status.REQUESTED,
    Status.SENT,
    Status.PENDING_PAYMENT,
    Status.PARTIALLY_PAID,
    Status.PAID,
)


class PaymentMethodType(str, Enum):
    """Type tags carried by payment methods; each unlocks one metadata field."""

    CASH = "Efectivo"
    VOUCHER = "Vales"
    TRANSFER = "Transferencia"


class WriteOperation(str, Enum):
    """Write primitives subject to the permission pre-check."""

    CREATE = "create"
    UPDATE = "update"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "STORE_BATCH_CAP",
    "NO_ORDER_NUMBER",
    "ID_FIELD",
    "TableName",
    "OPTIONS_SHEET",
    "LineField",
    "OrderField",
    "PaymentField",
    "PaymentMethodField",
    "Status",
    "PAYMENT_STATUSES",
    "REQUESTED_ORDER_STATUSES",
    "PaymentMethodType",
    "WriteOperation",
]
