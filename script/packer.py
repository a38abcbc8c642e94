import dataclasses
import os
import platform
import shlex
import common


@dataclasses.dataclass(frozen=True)
class package_descriptor:
    """待打包组件的描述，安装到payload_dir后创建，只被打包一次"""

    name: str  # 包名
    version: str  # 版本号
    subversion: str  # 版本后缀，如-1
    depends: tuple[str, ...]  # 依赖的包
    maintainer: str  # 维护者
    homepage: str  # 主页
    description: str  # 描述
    payload_dir: str  # 安装内容的根目录

    def file_stem(self, arch: str) -> str:
        """包文件名，不含扩展名

        Args:
            arch (str): 包的架构
        """
        return f"{self.name}_{self.version}{self.subversion}_{arch}"


def get_package_arch() -> str:
    """获取当前机器架构，相当于uname -m"""
    return platform.machine()


def get_payload_size(payload_dir: str) -> int:
    """递归计算目录大小，单位为KiB，向上取整，软链接按链接本身计算

    Args:
        payload_dir (str): 要计算的目录
    """
    total = 0
    for root, dirs, files in os.walk(payload_dir):
        for item in (*dirs, *files):
            path = os.path.join(root, item)
            if os.path.islink(path) or os.path.isfile(path):
                total += os.lstat(path).st_size
    return (total + 1023) // 1024


def has_payload(payload_dir: str) -> bool:
    """检查目录中是否有文件或软链接"""
    for _, _, files in os.walk(payload_dir):
        if files:
            return True
    return False


def make_metadata(descriptor: package_descriptor, arch: str, size: int) -> dict[str, str]:
    """生成包的元数据记录

    Args:
        descriptor (package_descriptor): 包描述
        arch (str): 包的架构
        size (int): 安装大小，单位为KiB

    Returns:
        dict[str, str]: 元数据，按control文件的字段顺序排列
    """
    return {
        "Package": descriptor.name,
        "Architecture": arch,
        "Installed-Size": str(size),
        "Maintainer": descriptor.maintainer,
        "Version": f"{descriptor.version}{descriptor.subversion}",
        "Homepage": descriptor.homepage,
        "Depends": ", ".join(descriptor.depends),
        "Description": descriptor.description,
    }


def format_metadata(metadata: dict[str, str]) -> str:
    return "".join(f"{key}: {value}\n" for key, value in metadata.items())


class basic_archiver:
    """将元数据和安装内容合并为一个包文件的外部工具接口"""

    suffix: str  # 包文件扩展名

    def write_metadata(self, payload_dir: str, metadata: dict[str, str]) -> None:
        raise NotImplementedError

    def archive_command(self, payload_dir: str, output_path: str) -> str:
        raise NotImplementedError

    def install_command(self, package_path: str) -> str:
        """将包安装到当前系统的命令"""
        raise NotImplementedError


class dpkg_archiver(basic_archiver):
    """生成deb包"""

    suffix = ".deb"

    def write_metadata(self, payload_dir: str, metadata: dict[str, str]) -> None:
        debian_dir = os.path.join(payload_dir, "DEBIAN")
        control_path = os.path.join(debian_dir, "control")
        os.makedirs(debian_dir, exist_ok=True)
        with open(control_path, "w") as file:
            file.write(format_metadata(metadata))
        os.chmod(control_path, 0o644)
        os.chmod(debian_dir, 0o755)

    def archive_command(self, payload_dir: str, output_path: str) -> str:
        return f"dpkg -b {shlex.quote(payload_dir)} {shlex.quote(output_path)}"

    def install_command(self, package_path: str) -> str:
        return f"dpkg -i {shlex.quote(package_path)}"


class tar_archiver(basic_archiver):
    """生成带.PKGINFO元数据的tar.gz包"""

    suffix = ".pkg"

    def write_metadata(self, payload_dir: str, metadata: dict[str, str]) -> None:
        with open(os.path.join(payload_dir, ".PKGINFO"), "w") as file:
            file.write(format_metadata(metadata))

    def archive_command(self, payload_dir: str, output_path: str) -> str:
        return f"tar -czf {shlex.quote(output_path)} -C {shlex.quote(payload_dir)} ."

    def install_command(self, package_path: str) -> str:
        return f"tar -xzf {shlex.quote(package_path)} -C / --exclude=./.PKGINFO"


archiver_list: dict[str, type[basic_archiver]] = {"deb": dpkg_archiver, "pkg": tar_archiver}


def package(descriptor: package_descriptor, repo_dir: str, archiver: basic_archiver, arch: str | None = None) -> str:
    """将安装内容打包到输出仓库

    Args:
        descriptor (package_descriptor): 包描述
        repo_dir (str): 输出仓库目录
        archiver (basic_archiver): 打包工具
        arch (str | None, optional): 包的架构. 默认为当前机器架构.

    Raises:
        packaging_failed: 安装内容为空或打包工具返回非0值

    Returns:
        str: 包文件路径
    """
    arch = arch or get_package_arch()
    output_path = os.path.join(repo_dir, descriptor.file_stem(arch) + archiver.suffix)
    if common.command_dry_run.get():
        print(f"[toolchains] Pack {descriptor.payload_dir} -> {output_path}.")
        return output_path
    if not os.path.isdir(descriptor.payload_dir) or not has_payload(descriptor.payload_dir):
        raise common.packaging_failed(f'The payload of package {descriptor.name} in "{descriptor.payload_dir}" is empty.')

    size = get_payload_size(descriptor.payload_dir)
    archiver.write_metadata(descriptor.payload_dir, make_metadata(descriptor, arch, size))
    common.mkdir(repo_dir, False)
    result = common.run_command(archiver.archive_command(descriptor.payload_dir, output_path), ignore_error=True)
    if result and not result.ok:
        raise common.packaging_failed(f"Pack {descriptor.name} failed with errno={result.exit_code}.")
    print(f"[toolchains] Package {output_path} created.")
    return output_path


assert __name__ != "__main__", "Import this file instead of running it directly."
