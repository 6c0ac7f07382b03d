#!/usr/bin/env python3
"""
Prometheus Metrics Wrapper

Turns metric descriptors and scrape samples into prometheus_client metric
families, applying the exporter's default labels (e.g. ``region``) to every
metric it builds.
"""

from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

from prometheus_client import Info as PrometheusInfo
from prometheus_client.core import CollectorRegistry, CounterMetricFamily, GaugeMetricFamily, Metric

from memcached_exporter.mapping import COUNTER, MetricDescriptor, Sample


class BaseMetricWrapper:
    """Base class for metric wrappers with default labels"""

    def __init__(self, metric_instance, default_labels: Dict[str, str] = None):
        """
        Initialize the wrapper

        Args:
            metric_instance: Prometheus metric instance
            default_labels: Default labels to apply to all metric operations
        """
        self._metric = metric_instance
        self._default_labels = default_labels or {}

    def _merge_labels(self, additional_labels: Dict[str, str] = None) -> Dict[str, str]:
        """Merge default labels with additional labels"""
        labels = self._default_labels.copy()
        if additional_labels:
            labels.update(additional_labels)
        return labels

    def labels(self, **labels):
        """Return labeled metric with default labels merged"""
        merged_labels = self._merge_labels(labels)
        if not merged_labels:
            return self._metric
        return self._metric.labels(**merged_labels)


class InfoWrapper(BaseMetricWrapper):
    """Wrapper for Prometheus Info with default labels"""

    def info(self, info_dict: Dict[str, str], **labels):
        """Set info with default labels"""
        self.labels(**labels).info(info_dict)


class MetricFactory:
    """Factory class to create metrics with default labels"""

    def __init__(self, default_labels: Dict[str, str] = None, registry: CollectorRegistry = None):
        """
        Initialize metric factory

        Args:
            default_labels: Default labels to apply to all metrics
            registry: Prometheus registry to use for directly instrumented metrics
        """
        self.default_labels = default_labels or {}
        self.registry = registry

    def _label_names(self, label_names: Sequence[str]) -> List[str]:
        return list(self.default_labels.keys()) + list(label_names)

    def family(self, descriptor: MetricDescriptor) -> Metric:
        """Create an empty metric family for a descriptor"""
        family_class = CounterMetricFamily if descriptor.kind == COUNTER else GaugeMetricFamily
        return family_class(
            descriptor.name,
            descriptor.help,
            labels=self._label_names(descriptor.label_names)
        )

    def families(self, descriptors: Iterable[MetricDescriptor],
                 samples: Mapping[str, Sequence[Sample]],
                 skip_empty: bool = True) -> Iterator[Metric]:
        """Yield one populated family per descriptor, in descriptor order"""
        default_values = list(self.default_labels.values())
        for descriptor in descriptors:
            descriptor_samples = samples.get(descriptor.name, ())
            if skip_empty and not descriptor_samples:
                continue
            family = self.family(descriptor)
            for sample in descriptor_samples:
                family.add_metric(default_values + list(sample.label_values), sample.value)
            yield family

    def info(self, name: str, documentation: str, labelnames: Optional[List[str]] = None) -> InfoWrapper:
        """Create an Info metric with default labels"""
        labelnames = labelnames or []
        all_labelnames = list(self.default_labels.keys()) + labelnames

        metric = PrometheusInfo(
            name=name,
            documentation=documentation,
            labelnames=all_labelnames,
            registry=self.registry
        )

        return InfoWrapper(metric, self.default_labels)
