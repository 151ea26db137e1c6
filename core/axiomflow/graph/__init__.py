"""
Workflow graphs: definitions, validation, expression resolution, node
handlers and the executor.

Import from the submodules (``axiomflow.graph.executor``,
``axiomflow.graph.validator`` ...) or from the top-level ``axiomflow``
package.
"""
