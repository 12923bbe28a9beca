import enum


class Role(str, enum.Enum):
    admin = "admin"
    logistica = "logistica"
    armazem = "armazem"
    cliente = "cliente"
    comercial = "comercial"


class ArtifactKind(str, enum.Enum):
    photo = "photo"
    document = "document"
    none = "none"


class Bucket(str, enum.Enum):
    photos = "carregamento-fotos"
    documents = "carregamento-documentos"


class PermissionAction(str, enum.Enum):
    create = "create"
    read = "read"
    update = "update"
    delete = "delete"
