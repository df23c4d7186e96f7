"""
Collaborators the lifecycle services depend on: document file storage and
the payment gateway. Both are called with a timeout, and any failure is
raised as DependencyError so that no state transition is committed.
"""
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
import logging
import os
import time
import uuid

from django.conf import settings
from django.core.files.storage import default_storage
from django.utils import timezone
from django.utils.module_loading import import_string
from django.utils.text import get_valid_filename

from .exceptions import DependencyError

logger = logging.getLogger(__name__)


def call_with_timeout(func, timeout, *args, **kwargs):
    executor = ThreadPoolExecutor(max_workers=1)
    try:
        future = executor.submit(func, *args, **kwargs)
        return future.result(timeout=timeout)
    except FutureTimeout:
        raise DependencyError(f"{getattr(func, '__name__', 'call')} timed out after {timeout}s")
    finally:
        executor.shutdown(wait=False)


class DocumentStorage:
    """
    Stores document files under bnpl_documents/<reference>/<document_type>/.
    A name already taken gets a suffix from the storage backend; existing
    files are only removed through ``delete``.
    """
    root = 'bnpl_documents'

    def __init__(self, storage=None, timeout=None):
        self.storage = storage or default_storage
        self.timeout = timeout if timeout is not None else getattr(settings, 'BNPL_STORAGE_TIMEOUT', 30)

    def path_for(self, reference, document_type, filename):
        name = get_valid_filename(os.path.basename(filename or 'document')) or 'document'
        return f"{self.root}/{reference}/{document_type}/{name}"

    def save(self, reference, document_type, file):
        path = self.path_for(reference, document_type, getattr(file, 'name', None))
        try:
            stored = call_with_timeout(self.storage.save, self.timeout, path, file)
        except DependencyError:
            logger.error(f"Storing {document_type} for {reference} timed out")
            raise
        except Exception as e:
            logger.error(f"Storing {document_type} for {reference} failed: {str(e)}")
            raise DependencyError(f"Could not store document: {str(e)}")

        logger.info(f"Stored {document_type} for {reference} at {stored}")
        return stored

    def delete(self, name):
        """
        Remove a stored file that is no longer referenced. Failures are logged
        and left for manual cleanup; the domain state is already consistent.
        """
        try:
            call_with_timeout(self.storage.delete, self.timeout, name)
        except Exception as e:
            logger.error(f"Could not remove orphaned file {name}: {str(e)}")
            return False

        logger.info(f"Removed {name}")
        return True


class GatewayResult:
    def __init__(self, success, reference=None, message=''):
        self.success = success
        self.reference = reference
        self.message = message

    def __repr__(self):
        return f"GatewayResult(success={self.success}, reference={self.reference})"


class MockPaymentGateway:
    """
    Stand-in for a real card/bank/wallet gateway. Waits BNPL_MOCK_GATEWAY_DELAY
    seconds and approves every charge.
    """

    def __init__(self, delay=None):
        self.delay = delay if delay is not None else getattr(settings, 'BNPL_MOCK_GATEWAY_DELAY', 0)

    def charge(self, amount, method, reference, credentials=None):
        if self.delay:
            time.sleep(self.delay)
        return GatewayResult(True, reference=reference, message=f"{method} charge of {amount} accepted")


def new_transaction_reference():
    return f"TXN{int(timezone.now().timestamp() * 1000)}{uuid.uuid4().hex[:4].upper()}"


def get_payment_gateway():
    path = getattr(settings, 'BNPL_PAYMENT_GATEWAY', 'flexifee_system.gateways.MockPaymentGateway')
    return import_string(path)()


def charge(gateway, amount, method, reference, credentials=None, timeout=None):
    """Run a gateway charge and return the confirmed transaction reference"""
    timeout = timeout if timeout is not None else getattr(settings, 'BNPL_GATEWAY_TIMEOUT', 30)
    try:
        result = call_with_timeout(gateway.charge, timeout, amount, method, reference, credentials)
    except DependencyError:
        logger.error(f"Payment gateway timed out for {reference}")
        raise
    except Exception as e:
        logger.error(f"Payment gateway error for {reference}: {str(e)}")
        raise DependencyError(f"Payment gateway error: {str(e)}")

    if not result.success:
        logger.warning(f"Payment gateway declined {reference}: {result.message}")
        raise DependencyError(f"Payment declined: {result.message}")
    return result.reference or reference
