# mountvfs/monitoring/context.py
"""
Context helpers using contextvars for operation/mount propagation.
"""
import contextlib
import contextvars
import uuid

operation_id_var = contextvars.ContextVar("operation_id", default=None)
operation_var = contextvars.ContextVar("operation", default=None)
mount_path_var = contextvars.ContextVar("mount_path", default=None)

def set_operation_context(operation_id=None, operation=None, mount_path=None):
    if operation_id is not None:
        operation_id_var.set(operation_id)
    if operation is not None:
        operation_var.set(operation)
    if mount_path is not None:
        mount_path_var.set(mount_path)

def get_operation_context():
    return {
        "operation_id": operation_id_var.get(),
        "operation": operation_var.get(),
        "mount_path": mount_path_var.get(),
    }

@contextlib.contextmanager
def operation_context(operation, mount_path=None, operation_id=None):
    """Bind an operation id, name and mount to every log line emitted inside.

    Nested contexts keep the outer operation id so a relay copy or a search
    shows up as one logical operation.
    """
    tokens = []
    current = operation_id_var.get()
    tokens.append((operation_id_var, operation_id_var.set(operation_id or current or uuid.uuid4().hex[:12])))
    tokens.append((operation_var, operation_var.set(operation)))
    if mount_path is not None:
        tokens.append((mount_path_var, mount_path_var.set(mount_path)))
    try:
        yield get_operation_context()
    finally:
        for var, token in reversed(tokens):
            var.reset(token)
