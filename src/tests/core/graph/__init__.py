"""Test suite for the Relaygraph graph system.

Organized into the following structure:

1. Graph definition and compilation (test_base.py)
   - Node registration and edges
   - Validation errors and advisory warnings

2. Nodes (nodes/)
   - Node base class and function nodes

3. State management (test_state.py, test_reducers.py)
   - State container and schemas
   - Reducers and merging

4. Execution (test_executor.py)
   - Supersteps, fan-out/fan-in, loops
   - Failure policies, timeouts, cancellation, streaming

5. Checkpoints (test_checkpoint.py)
   - Stores and session resume

6. Configuration (test_config.py)
"""
