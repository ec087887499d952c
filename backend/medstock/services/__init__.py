# Services module

from medstock.services.threshold_classifier import StockLevel, classify, days_until_expiry
from medstock.services.stock_ledger import StockLedger
from medstock.services.alert_engine import AlertEngine, register_alert_engine
from medstock.services.transfer_workflow import TransferWorkflow
from medstock.services.stock_service import StockService
from medstock.services.scheduler_service import TaskScheduler, scheduler
