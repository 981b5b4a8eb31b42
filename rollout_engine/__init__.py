"""
rollout_engine

Kopf operator that rolls out versioned StatefulSets with a canary step.

Components:
- VersionManager: mints `<name>[-z<i>]-v<N>` StatefulSets from an ExtendedStatefulSet.
- VolumePreprovisioner: binds PVCs ahead of the rollout with a throwaway StatefulSet.
- VersionCleanup: deletes versions below the highest ready one.
- RolloutMutatingAdmission: stamps canary-rollout annotations on template change.
- RolloutStateMachine: advances the partition pod by pod, fails on watch-time budget.

Run with:
    kopf run -m rollout_engine.handlers --all-namespaces
"""

__version__ = "0.1.0"
