"""
Names of the objects the uninstaller looks for or removes.
"""

LABEL_PREFIX = "longhorn.io"
FINALIZER = "longhorn.io"

# Settings
SETTING_DELETING_CONFIRMATION_FLAG = "deleting-confirmation-flag"
SETTING_DEFAULT_ENGINE_IMAGE = "default-engine-image"

# Annotations honored by the admission webhook during uninstall
ANNOTATION_DELETE_BACKUP_TARGET = "delete-backup-target-from-longhorn"
ANNOTATION_DELETE_ENGINE_IMAGE = "delete-engine-image-from-longhorn"
ANNOTATION_DELETE_NODE = "delete-node-from-longhorn"

LABEL_BACKUP_VOLUME = "backup-volume"
LABEL_BACKUP_TARGET = "backup-target"

# Workloads
MANAGER_DAEMON_SET = "longhorn-manager"
DRIVER_DEPLOYER = "longhorn-driver-deployer"
CSI_ATTACHER = "csi-attacher"
CSI_PROVISIONER = "csi-provisioner"
CSI_RESIZER = "csi-resizer"
CSI_SNAPSHOTTER = "csi-snapshotter"
CSI_PLUGIN = "longhorn-csi-plugin"
CSI_DRIVER_NAME = "driver.longhorn.io"

DRIVER_DEPLOYMENTS = [DRIVER_DEPLOYER, CSI_ATTACHER, CSI_PROVISIONER, CSI_RESIZER, CSI_SNAPSHOTTER]
DRIVER_DAEMON_SETS = [CSI_PLUGIN]

# Cluster configuration
VALIDATING_WEBHOOK = "longhorn-webhook-validator"
MUTATING_WEBHOOK = "longhorn-webhook-mutator"
DEFAULT_STORAGE_CLASS = "longhorn"
LEASES = [
    "longhorn-manager-upgrade-lock",
    "driver-longhorn-io",
    "external-attacher-leader-driver-longhorn-io",
    "external-resizer-driver-longhorn-io",
    "external-snapshotter-leader-driver-longhorn-io",
]
SECRETS = ["longhorn-webhook-ca", "longhorn-webhook-tls"]
PDB_NAMES = [CSI_ATTACHER, CSI_PROVISIONER]
PDB_PREFIX = "instance-manager"

# Volume states that count as "in use"
VOLUME_STATES_IN_USE = ("attaching", "attached")


def label_key(name: str) -> str:
    return f"{LABEL_PREFIX}/{name}"
