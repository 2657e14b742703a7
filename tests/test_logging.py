"""Tests for operation-aware logging."""

import json
import logging

from observability.logging import ColoredFormatter, JSONFormatter, OperationContextFilter, operation_context


def make_record(message='aggregating', **extra):
    record = logging.LogRecord('pipelines.aggregate', logging.INFO, __file__, 10, message, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestOperationContext:
    def test_records_inside_context_are_tagged(self):
        record = make_record()

        with operation_context('aggregation', 'log-1'):
            assert OperationContextFilter().filter(record)

        assert record.operation == 'aggregation'
        assert record.operationId == 'log-1'

    def test_records_outside_context_are_untouched(self):
        with operation_context('aggregation', 'log-1'):
            pass
        record = make_record()

        assert OperationContextFilter().filter(record)
        assert not hasattr(record, 'operation')

    def test_nested_context_restores_outer(self):
        with operation_context('statistics', 'outer'):
            with operation_context('sync', 'inner'):
                pass
            record = make_record()
            OperationContextFilter().filter(record)

        assert record.operationId == 'outer'


class TestFormatters:
    def test_json_includes_operation_and_extras(self):
        record = make_record(operation='sync', operationId='log-2', seedId='s1')

        entry = json.loads(JSONFormatter('test-service').format(record))

        assert entry['message'] == 'aggregating'
        assert entry['service'] == 'test-service'
        assert entry['operation'] == 'sync'
        assert entry['operationId'] == 'log-2'
        assert entry['seedId'] == 's1'
        assert entry['timestamp'].endswith('Z')
        assert 'msg' not in entry

    def test_plain_output_shows_operation(self):
        record = make_record(operation='sync', operationId='log-2')

        line = ColoredFormatter(use_colors=False).format(record)

        assert '[sync log-2]' in line
        assert line.endswith('aggregating')
